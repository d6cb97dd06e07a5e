"""Core components"""
from .types import *
from .errors import *
from .cancellation import CancellationToken
from .llm_client import LLMClient
from .context_budget import ContextBudgetManager, HistorySummarizer
from .human_input import HumanInputGate
from .stream_filter import StreamingResponseFilter
from .agent_loop import AgentLoop, AgentConfig, EventBus
from .session import Session, SessionManager
