from signauth.services.audit import AuditRecorder
from signauth.services.expiry import ExpirySweeper
from signauth.services.lifecycle import LifecycleStateMachine
from signauth.services.orchestrator import RequestOrchestrator, get_orchestrator
from signauth.services.token_resolver import TokenResolver

__all__ = [
    "AuditRecorder",
    "ExpirySweeper",
    "LifecycleStateMachine",
    "RequestOrchestrator",
    "TokenResolver",
    "get_orchestrator",
]
