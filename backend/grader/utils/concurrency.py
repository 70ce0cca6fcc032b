"""
Concurrency utilities - semaphores for resource-limited operations.
"""

import asyncio

from grader.config import MAX_CONCURRENT_EXECUTIONS

# Limits concurrent calls to the code execution service (it rate-limits per IP)
execution_semaphore = asyncio.Semaphore(MAX_CONCURRENT_EXECUTIONS)
