"""Helpers that let reactive page state settle after DOM mutations."""

from __future__ import annotations

import logging

from playwright.async_api import Page

log = logging.getLogger(__name__)

DEFAULT_SETTLE_TIMEOUT = 1_000

# Two animation frames plus a macrotask: long enough for framework renders
# triggered by the previous mutation to flush.
NEXT_FRAME_SCRIPT = """
    () => new Promise(resolve => {
        requestAnimationFrame(() => requestAnimationFrame(() => setTimeout(resolve, 0)));
    })
"""

DOM_IDLE_SCRIPT = """
    ({timeoutMs, thresholdMs}) => new Promise(resolve => {
        let last = Date.now();
        const ob = new MutationObserver(() => (last = Date.now()));
        ob.observe(document, {subtree: true, childList: true, attributes: true});
        const start = Date.now();
        (function check() {
            if (Date.now() - last > thresholdMs) {
                ob.disconnect();
                resolve(true);
                return;
            }
            if (Date.now() - start > timeoutMs) {
                ob.disconnect();
                resolve(false);
                return;
            }
            setTimeout(check, 25);
        })();
    })
"""


async def wait_dom_idle(page: Page, timeout_ms: int = DEFAULT_SETTLE_TIMEOUT, threshold_ms: int = 100) -> bool:
    """Wait until DOM mutations have been idle for ``threshold_ms``."""

    try:
        return bool(await page.evaluate(DOM_IDLE_SCRIPT, {"timeoutMs": timeout_ms, "thresholdMs": threshold_ms}))
    except Exception as exc:
        log.debug("DOM idle wait failed, falling back to fixed delay: %s", exc)
        await page.wait_for_timeout(threshold_ms)
        return False


async def settle(page: Page, settle_ms: int = 100) -> None:
    """Yield to the page so dependent reactive state observes the last mutation."""

    try:
        await page.evaluate(NEXT_FRAME_SCRIPT)
    except Exception as exc:
        log.debug("Frame wait failed: %s", exc)
    if settle_ms > 0:
        await wait_dom_idle(page, timeout_ms=max(settle_ms * 5, DEFAULT_SETTLE_TIMEOUT), threshold_ms=settle_ms)
