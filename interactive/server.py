from __future__ import annotations

import asyncio
import atexit
import logging
import os
import time
import uuid
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit, urlunsplit

import httpx
from flask import Flask, jsonify, request
from playwright.async_api import Error as PwError, async_playwright
from pydantic import ValidationError
from werkzeug.exceptions import HTTPException

from guidance.dsl.models import ActionMode, MultiStepDescriptor

from .config import load_config
from .errors import GuideError, StepConsistencyError
from .requirements import CheckContext
from .runtime import GuideRuntime, build_runtime

app = Flask(__name__)
logging.basicConfig(level=logging.INFO)
log = logging.getLogger("guide")

_CDP_ENV_VARS = ("GUIDE_CDP_URL", "CDP_URL")
_CDP_DEFAULT_ENDPOINTS = (
    "http://127.0.0.1:9222",
    "http://localhost:9222",
)


def _error_payload(error: Exception, correlation_id: str) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"error": str(error), "correlation_id": correlation_id}
    if isinstance(error, GuideError):
        payload["code"] = error.code
        if error.details:
            payload["details"] = error.details
    return payload


@app.errorhandler(StepConsistencyError)
def handle_consistency_error(error: StepConsistencyError):
    correlation_id = str(uuid.uuid4())[:8]
    log.error("[%s] Step bookkeeping is inconsistent: %s", correlation_id, error)
    return jsonify(_error_payload(error, correlation_id)), 500


@app.errorhandler(Exception)
def handle_exception(error):  # pragma: no cover - defensive handler
    if isinstance(error, HTTPException):
        return error
    correlation_id = str(uuid.uuid4())[:8]
    log.exception("[%s] Uncaught exception: %s", correlation_id, error)
    return jsonify(_error_payload(error, correlation_id)), 500


# ---------------------------------------------------------------------------
# CDP helpers


def _normalise_cdp_candidate(value: Optional[str]) -> str:
    if not value:
        return ""
    trimmed = value.strip()
    if not trimmed:
        return ""
    if trimmed.lower().startswith(("http://", "https://", "ws://", "wss://")):
        return trimmed.rstrip("/")
    if ":" in trimmed:
        return f"http://{trimmed}".rstrip("/")
    return trimmed


def _candidate_cdp_endpoints() -> List[str]:
    candidates: List[str] = []
    for value in [os.getenv(name) for name in _CDP_ENV_VARS] + list(_CDP_DEFAULT_ENDPOINTS):
        normalised = _normalise_cdp_candidate(value)
        if normalised and normalised not in candidates:
            candidates.append(normalised)
    return candidates


def _json_version_url(base: str) -> str:
    working = (base or "").strip()
    if not working:
        return ""
    if "://" not in working:
        working = f"http://{working}"
    parsed = urlsplit(working)
    return urlunsplit((parsed.scheme or "http", parsed.netloc, "/json/version", "", ""))


async def _wait_cdp(endpoint: str, *, timeout: float = 6.0, poll_interval: float = 0.25) -> bool:
    version_url = _json_version_url(endpoint)
    if not version_url:
        return False
    deadline = time.time() + max(timeout, 1.0)
    async with httpx.AsyncClient(timeout=2.0) as client:
        while time.time() < deadline:
            try:
                response = await client.get(version_url)
                if response.status_code == 200:
                    return True
            except httpx.HTTPError as exc:
                log.debug("CDP endpoint %s not ready: %s", version_url, exc)
            await asyncio.sleep(poll_interval)
    log.warning("Timed out waiting for CDP endpoint %s", version_url)
    return False


# ---------------------------------------------------------------------------
# Playwright management


LOOP = asyncio.new_event_loop()
asyncio.set_event_loop(LOOP)

PW = None
BROWSER = None
PAGE = None
RUNTIME: GuideRuntime | None = None
CONFIG = load_config()


def _run(coro):
    return LOOP.run_until_complete(coro)


async def _close_browser() -> None:
    global PW, BROWSER, PAGE, RUNTIME
    if RUNTIME is not None:
        await RUNTIME.aclose()
        RUNTIME = None
    browser = BROWSER
    PAGE = None
    BROWSER = None
    if browser is not None:
        try:
            await browser.close()
        except PwError as exc:
            log.debug("Browser close failed: %s", exc)
    if PW is not None:
        await PW.stop()
        PW = None


@atexit.register
def _cleanup_browser() -> None:  # pragma: no cover - shutdown hook
    try:
        _run(_close_browser())
    except Exception as exc:
        log.debug("Error during Playwright shutdown: %s", exc)


async def _init_browser() -> None:
    global PW, BROWSER, PAGE
    if PAGE is not None:
        return
    if PW is None:
        PW = await async_playwright().start()

    errors: List[str] = []
    for candidate in _candidate_cdp_endpoints():
        if not await _wait_cdp(candidate):
            errors.append(f"{candidate} did not respond")
            continue
        try:
            browser = await PW.chromium.connect_over_cdp(candidate)
        except PwError as exc:
            errors.append(f"{candidate}: {exc}")
            continue
        context = browser.contexts[0] if browser.contexts else await browser.new_context()
        BROWSER = browser
        PAGE = context.pages[0] if context.pages else await context.new_page()
        log.info("Connected to shared browser via %s", candidate)
        return

    message = errors[-1] if errors else "no CDP endpoint configured"
    log.error("Could not connect to a shared browser: %s", message)
    raise RuntimeError(f"Shared browser unavailable: {message}")


def _get_runtime() -> GuideRuntime:
    global RUNTIME
    if RUNTIME is None:
        _run(_init_browser())
        run_id = os.getenv("GUIDE_RUN_ID") or time.strftime("run-%Y%m%d-%H%M%S")
        RUNTIME = build_runtime(PAGE, CONFIG, run_id=run_id)
    return RUNTIME


def _body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Step API


@app.post("/steps/<step_id>/trigger")
def trigger_step(step_id: str):
    data = _body()
    button_type = str(data.get("button_type") or ActionMode.DO.value).strip().lower()
    if button_type not in {mode.value for mode in ActionMode}:
        return jsonify({"error": f"unknown button_type '{button_type}'"}), 400

    runtime = _get_runtime()
    try:
        if isinstance(data.get("step"), dict):
            step = runtime.parse_step(data["step"])
        else:
            step = _run(runtime.find_step(step_id))
    except (ValidationError, KeyError, TypeError) as exc:
        return jsonify({"error": f"invalid step: {exc}"}), 400
    except GuideError as exc:
        return jsonify({"error": str(exc), "code": exc.code}), 404

    outcome = _run(runtime.orchestrator.trigger(step, button_type))
    return jsonify(outcome.as_dict())


@app.post("/steps/<step_id>/reset")
def reset_step(step_id: str):
    runtime = _get_runtime()
    try:
        unique_id = _run(runtime.unique_id_for(step_id))
    except ValidationError as exc:
        return jsonify({"error": f"invalid step: {exc}"}), 400
    except GuideError as exc:
        return jsonify({"error": str(exc), "code": exc.code}), 404
    state = _run(runtime.orchestrator.reset(unique_id))
    return jsonify({"step_id": step_id, "unique_id": unique_id, **state.as_dict()})


@app.get("/steps/state")
def steps_state():
    runtime = _get_runtime()
    return jsonify({"steps": runtime.orchestrator.snapshot()})


@app.post("/multisteps/run")
def run_multistep():
    data = _body()
    try:
        step = MultiStepDescriptor.model_validate({"target_action": "multistep", **data})
    except ValidationError as exc:
        return jsonify({"error": "invalid multi-step", "details": exc.errors(include_url=False)}), 400
    runtime = _get_runtime()
    outcome = _run(runtime.orchestrator.trigger(step))
    return jsonify(outcome.as_dict())


@app.post("/requirements/check")
def check_requirements():
    data = _body()
    context = CheckContext(
        target_action=str(data.get("target_action") or "button"),
        ref_target=str(data.get("ref_target") or ""),
        target_value=data.get("target_value"),
        step_id=data.get("step_id"),
    )
    runtime = _get_runtime()
    result = _run(runtime.evaluator.evaluate(data.get("requirements"), context))
    return jsonify(result.payload())


@app.post("/selectors/resolve")
def resolve_selector():
    data = _body()
    selector = str(data.get("selector") or "").strip()
    if not selector:
        return jsonify({"error": "selector empty"}), 400
    runtime = _get_runtime()
    result = _run(runtime.engine.resolve(selector))
    return jsonify(result.to_dict())


@app.get("/healthz")
def health():  # pragma: no cover - trivial endpoint
    return "ok", 200


if __name__ == "__main__":  # pragma: no cover - manual run helper
    app.run("0.0.0.0", int(os.getenv("GUIDE_PORT", "7100")), threaded=False)
