from .advisor import AdvisorResult, RelocationAdvisor, create_advisor
from .fusion import FusionEngine
from .orchestrator import Orchestrator

__all__ = [
    "AdvisorResult",
    "FusionEngine",
    "Orchestrator",
    "RelocationAdvisor",
    "create_advisor",
]
