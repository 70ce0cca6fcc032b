"""User-related Pydantic models"""

from pydantic import BaseModel, ConfigDict
from typing import Optional


class User(BaseModel):
    """Identity resolved from a session; accounts themselves live elsewhere"""
    model_config = ConfigDict(extra="ignore")
    user_id: str
    email: str
    name: str
    role: str = "student"  # teacher or student
    register_number: Optional[str] = None
    branch: Optional[str] = None
    semester: Optional[str] = None
