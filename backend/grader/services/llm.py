"""
Async Gemini client used by the AI judge, on top of google-generativeai.
"""

from typing import Optional

import google.generativeai as genai

from grader.config import logger, JUDGE_MODEL


class UserMessage:
    """Prompt text sent as a single user turn."""

    def __init__(self, text: str = ""):
        self.text = text


class LlmChat:
    """
    Single-turn grading conversation, configured by chaining:

        chat = LlmChat(api_key=..., session_id=..., system_message=...)
            .with_model("gemini", JUDGE_MODEL)
            .with_params(temperature=0, response_mime_type="application/json")

    Every send_message() is one generate_content call; no history is kept
    between grading requests.
    """

    def __init__(self, api_key: str = "", session_id: str = "", system_message: str = ""):
        self.api_key = api_key
        self.session_id = session_id
        self.system_message = system_message
        self.model_name = JUDGE_MODEL
        self.generation_config = {}

    def with_model(self, provider: str, model_name: str) -> "LlmChat":
        if provider != "gemini":
            raise ValueError(f"Unsupported LLM provider: {provider}")
        self.model_name = model_name
        return self

    def with_params(self, temperature: Optional[float] = None,
                    response_mime_type: Optional[str] = None) -> "LlmChat":
        if temperature is not None:
            self.generation_config["temperature"] = temperature
        if response_mime_type is not None:
            self.generation_config["response_mime_type"] = response_mime_type
        return self

    async def send_message(self, message: UserMessage) -> str:
        """Return the reply text. Blocked or empty replies raise ValueError."""
        model = genai.GenerativeModel(
            model_name=self.model_name,
            system_instruction=self.system_message or None,
            generation_config=self.generation_config or None,
        )
        response = await model.generate_content_async(message.text)
        logger.debug(f"{self.model_name} replied for session {self.session_id}")

        # response.text raises ValueError when the candidate was blocked
        text = response.text
        if not text or not text.strip():
            raise ValueError(f"Empty reply from {self.model_name}")
        return text
