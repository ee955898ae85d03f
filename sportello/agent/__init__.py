"""Agent core module."""

from sportello.agent.context import ContextBuilder
from sportello.agent.intent import Classification, IntentClassifier, IntentType
from sportello.agent.loop import AgentLoop
from sportello.agent.loop_guard import ErrorLoopGuard
from sportello.agent.orchestrator import OrchestrationError, Orchestrator, Strategy, TurnContext, build_ladder
from sportello.agent.routing import RoutingContext, RoutingPlan, RoutingPlanner
from sportello.agent.runner import AgentRunner, RunResult, StopReason, ToolCallRecord

__all__ = [
    "AgentLoop",
    "AgentRunner",
    "Classification",
    "ContextBuilder",
    "ErrorLoopGuard",
    "IntentClassifier",
    "IntentType",
    "OrchestrationError",
    "Orchestrator",
    "RoutingContext",
    "RoutingPlan",
    "RoutingPlanner",
    "RunResult",
    "StopReason",
    "Strategy",
    "ToolCallRecord",
    "TurnContext",
    "build_ladder",
]
