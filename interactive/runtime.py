"""Wires the walkthrough components around one page."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from guidance.dsl.models import StepDescriptor
from guidance.dsl.registry import registry

from .cache import ResultCache
from .completion import CompletionTracker, resolve_content_root
from .config import GuideConfig, ensure_run_directories, load_config
from .context_provider import ContextProvider, GrafanaContextProvider
from .dom import DomBridge
from .errors import GuideError
from .executor import ActionExecutor
from .orchestrator import Orchestrator
from .requirements import RequirementsEvaluator
from .selector_engine import SelectorEngine
from .structured_logging import StepEventLog, prepare_log_paths

log = logging.getLogger(__name__)


@dataclass(slots=True)
class GuideRuntime:
    config: GuideConfig
    dom: Any
    engine: SelectorEngine
    provider: ContextProvider
    evaluator: RequirementsEvaluator
    executor: ActionExecutor
    completion: CompletionTracker
    orchestrator: Orchestrator
    event_log: Optional[StepEventLog] = None

    async def find_step(self, step_id: str) -> StepDescriptor:
        """Descriptor of the rendered control carrying ``step_id`` or ``section_id``."""

        root = await resolve_content_root(self.dom, self.config)
        selector = f'[data-step-id="{step_id}"], [data-section-id="{step_id}"]'
        controls = await self.dom.query_all(selector, root)
        if not controls:
            raise GuideError(f"No interactive step with id {step_id}", code="NOT_FOUND", details={"step_id": step_id})
        attributes = await self.dom.attributes(controls[0])
        return StepDescriptor.from_attributes(attributes)

    async def unique_id_for(self, step_id: str) -> str:
        """State key for a rendered step id, or ``step_id`` itself when already tracked."""

        try:
            return (await self.find_step(step_id)).unique_id
        except GuideError:
            if step_id in self.orchestrator.snapshot():
                return step_id
            raise

    def parse_step(self, payload: Dict[str, Any]) -> StepDescriptor:
        return registry.parse_step(payload)

    async def aclose(self) -> None:
        if self.event_log is not None:
            self.event_log.close()
        await self.provider.aclose()


def build_runtime(
    page: Any = None,
    config: Optional[GuideConfig] = None,
    *,
    dom: Any = None,
    provider: Optional[ContextProvider] = None,
    run_id: Optional[str] = None,
) -> GuideRuntime:
    """Build every component for ``page`` (or an already wrapped ``dom``)."""

    config = config or load_config()
    if dom is None:
        if page is None:
            raise ValueError("build_runtime needs a page or a dom bridge")
        dom = DomBridge(page, settle_ms=config.settle_ms)
    if provider is None:
        provider = GrafanaContextProvider(config, cache=ResultCache(config.cache_ttl_seconds))

    engine = SelectorEngine(dom)
    evaluator = RequirementsEvaluator(provider, dom, engine, config)
    executor = ActionExecutor(engine, dom, config)
    completion = CompletionTracker(dom, config)
    orchestrator = Orchestrator(
        dom=dom,
        engine=engine,
        evaluator=evaluator,
        executor=executor,
        completion=completion,
        config=config,
    )

    event_log = None
    if run_id:
        paths = prepare_log_paths(run_id, ensure_run_directories(run_id, config))
        event_log = StepEventLog(run_id, paths).attach(orchestrator.channel)
        log.info("Recording step events to %s", paths.events)

    return GuideRuntime(
        config=config,
        dom=dom,
        engine=engine,
        provider=provider,
        evaluator=evaluator,
        executor=executor,
        completion=completion,
        orchestrator=orchestrator,
        event_log=event_log,
    )
