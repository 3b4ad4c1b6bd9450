"""Runtime for guided, in-page interactive walkthroughs."""

from .config import GuideConfig, load_config
from .errors import (
    ActionError,
    GuideError,
    InvalidTransition,
    SelectorSyntaxError,
    SequenceResolutionError,
    StepConsistencyError,
)
from .orchestrator import Orchestrator, StepOutcome
from .requirements import CheckContext, RequirementsEvaluator
from .runtime import GuideRuntime, build_runtime
from .selector_engine import SelectorEngine
from .state import StepStatus

__all__ = [
    "ActionError",
    "CheckContext",
    "GuideConfig",
    "GuideError",
    "GuideRuntime",
    "InvalidTransition",
    "Orchestrator",
    "RequirementsEvaluator",
    "SelectorEngine",
    "SelectorSyntaxError",
    "SequenceResolutionError",
    "StepConsistencyError",
    "StepOutcome",
    "StepStatus",
    "build_runtime",
    "load_config",
]
