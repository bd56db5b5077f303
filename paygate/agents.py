"""
AI agent detection and agent-facing pricing helpers
"""

import re
from typing import Mapping, Optional

from pydantic import BaseModel, Field

# User-Agent fragments of known agent frameworks and automated clients
AGENT_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"openai",
        r"anthropic",
        r"claude",
        r"gpt-?[34]",
        r"langchain",
        r"autogpt",
        r"agent-?gpt",
        r"babyagi",
        r"superagi",
        r"crewai",
        r"autogen",
        r"llama-?index",
        r"semantic-?kernel",
        r"haystack",
        r"dspy",
        r"bot",
        r"crawler",
        r"spider",
        r"agent/",
        r"aiagent",
        r"mcp-client",
    )
]


def is_ai_agent(headers: Mapping[str, str]) -> bool:
    """
    A request comes from an agent when it says so (X-AI-Agent: true), its
    User-Agent matches a known framework, or it carries agent budget/task
    headers.
    """
    if headers.get("x-ai-agent", "").lower() == "true":
        return True
    user_agent = headers.get("user-agent", "")
    if user_agent and any(p.search(user_agent) for p in AGENT_PATTERNS):
        return True
    return bool(headers.get("x-agent-budget") or headers.get("x-agent-task-id"))


def _int_header(headers: Mapping[str, str], name: str) -> Optional[int]:
    value = headers.get(name)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        return None


class AgentHeaders(BaseModel):
    """Agent hints sent with a request"""
    budget: Optional[int] = None
    task_id: str = ""
    batch_size: int = 0
    priority: str = ""
    retry_count: int = 0

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "AgentHeaders":
        return cls(
            budget=_int_header(headers, "x-agent-budget"),
            task_id=headers.get("x-agent-task-id", ""),
            batch_size=_int_header(headers, "x-agent-batch-size") or 0,
            priority=headers.get("x-agent-priority", ""),
            retry_count=_int_header(headers, "x-agent-retry-count") or 0,
        )


class RetryStrategy(BaseModel):
    """Tells an agent whether and how to retry a rejected request"""
    shouldRetry: bool
    reason: str = ""
    maxRetries: int = 0
    backoffMultiplier: float = 1.0
    retryAfterSeconds: Optional[int] = None


def calculate_batch_price(base_price: int, discount_percent: int) -> int:
    """Per-item price after a batch discount; out-of-range discounts are ignored"""
    if discount_percent <= 0 or discount_percent > 100:
        return base_price
    return base_price - base_price * discount_percent // 100


def format_budget_recommendation(required: int, available: Optional[int]) -> str:
    if not available or available <= 0:
        return "Set X-Agent-Budget header with your available budget"
    return f"Increase budget by at least {required - available} units"


class CostEstimate(BaseModel):
    """Up-front price quote for an endpoint"""
    endpoint: str
    method: str = "GET"
    estimatedCost: int
    currency: str
    batchPricePerItem: Optional[int] = None
    minBatchSize: Optional[int] = None
    validUntil: str = Field(description="ISO-8601 expiry of the quote")
