from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urljoin

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from crosscheck.constants import BROWSER_ENGINES
from crosscheck.errors import ActionError, FatalError
from crosscheck.schemas import ActionStep, EnvironmentDescriptor, Orientation

LOGGER = logging.getLogger("crosscheck.driver")

STABILIZER_SCRIPT = (
    "(() => {"
    "  const install = () => {"
    "    try {"
    "      const style = document.createElement('style');"
    "      style.id = 'crosscheck-stabilizer-style';"
    "      style.textContent = 'html{scrollbar-gutter:stable both-edges;}*,*::before,*::after{animation:none!important;transition:none!important;}';"
    "      document.documentElement.appendChild(style);"
    "    } catch (err) { console.warn('crosscheck stabilizer init failed', err); }"
    "  };"
    "  if (document.documentElement) { install(); }"
    "  else { document.addEventListener('DOMContentLoaded', install, { once: true }); }"
    "})();"
)

DISABLE_ANIMATIONS_CSS = (
    "*,*::before,*::after{animation:none!important;transition:none!important;scroll-behavior:auto!important;}"
)


@dataclass(frozen=True)
class CapturedState:
    image: bytes
    url: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None


class UIDriver:
    """Drives one rendering environment for the lifetime of a job.

    Implementations raise ``ActionError`` when an action cannot be performed
    and ``TransientError``/``FatalError`` for infrastructure faults.
    """

    def __enter__(self) -> "UIDriver":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def start(self) -> None:
        return None

    def perform(self, action: ActionStep) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def capture(self, *, full_page: bool = True) -> CapturedState:  # pragma: no cover - interface stub
        raise NotImplementedError

    def close(self) -> None:
        return None


DriverFactory = Callable[[EnvironmentDescriptor], UIDriver]


def _require(payload: Dict[str, Any], action: str, *keys: str) -> Tuple[Any, ...]:
    values = []
    for key in keys:
        value = payload.get(key)
        if value is None or value == "":
            raise ActionError(action, f"requires {key}")
        values.append(value)
    return tuple(values)


def _timeout_kwargs(payload: Dict[str, Any]) -> Dict[str, Any]:
    timeout = payload.get("timeout_ms")
    if timeout is None:
        return {}
    try:
        return {"timeout": int(timeout)}
    except (TypeError, ValueError):
        return {}


class PlaywrightDriver(UIDriver):
    """Run actions and capture screenshots with Playwright's sync API.

    The sync API is bound to the thread that started it, so each job creates
    and closes its own driver on its worker thread.
    """

    def __init__(
        self,
        environment: EnvironmentDescriptor,
        *,
        headless: bool = True,
        post_wait_ms: int = 0,
        base_url: Optional[str] = None,
    ) -> None:
        self._environment = environment
        self._headless = headless
        self._post_wait_ms = max(0, int(post_wait_ms))
        self._base_url = base_url
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None

    @property
    def environment(self) -> EnvironmentDescriptor:
        return self._environment

    def _resolve_device(self, devices: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
        name = self._environment.device_name or ""
        landscape = self._environment.orientation == Orientation.landscape
        if landscape and f"{name} landscape" in devices:
            return dict(devices[f"{name} landscape"])
        descriptor = devices.get(name)
        if descriptor is None:
            # Generic names such as "iPad Pro" map to the first model variant.
            for candidate in sorted(devices):
                if candidate.startswith(f"{name} ") and not candidate.endswith(" landscape"):
                    descriptor = devices[candidate]
                    break
        if descriptor is None:
            raise FatalError(f"Unknown device '{name}'")
        resolved = dict(descriptor)
        if landscape:
            viewport = dict(resolved.get("viewport") or {})
            if viewport:
                resolved["viewport"] = {"width": viewport.get("height"), "height": viewport.get("width")}
        return resolved

    def _context_options(self) -> Tuple[str, Dict[str, Any]]:
        environment = self._environment
        if environment.is_mobile:
            descriptor = self._resolve_device(self._playwright.devices)
            browser_name = descriptor.pop("default_browser_type", "chromium")
            return browser_name, descriptor
        engine = BROWSER_ENGINES.get(environment.browser_name or "")
        if engine is None:
            raise FatalError(f"Unsupported browser '{environment.browser_name}'")
        return engine, {"viewport": {"width": environment.width, "height": environment.height}}

    def start(self) -> None:
        try:
            self._playwright = sync_playwright().start()
            browser_name, context_kwargs = self._context_options()
            browser_type = getattr(self._playwright, browser_name)
            launch_kwargs: Dict[str, Any] = {"headless": self._headless}
            if browser_name == "chromium":
                launch_kwargs["args"] = ["--disable-dev-shm-usage", "--no-sandbox"]
            if browser_name == "firefox":
                context_kwargs.pop("is_mobile", None)
                context_kwargs.pop("has_touch", None)
            self._browser = browser_type.launch(**launch_kwargs)
            self._context = self._browser.new_context(**context_kwargs)
            self._context.add_init_script(STABILIZER_SCRIPT)
            self._page = self._context.new_page()
        except FatalError:
            self.close()
            raise
        except PlaywrightError as exc:
            self.close()
            raise FatalError(f"Failed to start browser for {self._environment.key}: {exc}") from exc
        LOGGER.info("Launched %s for %s", browser_name, self._environment.key)

    def _resolve_url(self, url: str) -> str:
        if self._base_url:
            return urljoin(self._base_url, url)
        return url

    def perform(self, action: ActionStep) -> None:
        if self._page is None:
            raise FatalError("Driver has not been started")
        page = self._page
        name = action.name
        payload = dict(action.payload)
        try:
            action_repr = json.dumps(payload, sort_keys=True, default=str)
        except (TypeError, ValueError):
            action_repr = str(payload)
        LOGGER.debug("%s: %s %s", self._environment.key, name, action_repr)
        kwargs = _timeout_kwargs(payload)
        try:
            if name in {"visit", "goto"}:
                (url,) = _require(payload, name, "url")
                wait_until = str(payload.get("wait_until") or "load")
                page.goto(self._resolve_url(str(url)), wait_until=wait_until, **kwargs)
            elif name == "click":
                (selector,) = _require(payload, name, "selector")
                if payload.get("button"):
                    kwargs["button"] = str(payload["button"])
                if "force" in payload:
                    kwargs["force"] = bool(payload["force"])
                page.click(selector, **kwargs)
            elif name in {"dblclick", "double_click"}:
                (selector,) = _require(payload, name, "selector")
                page.dblclick(selector, **kwargs)
            elif name == "hover":
                (selector,) = _require(payload, name, "selector")
                page.hover(selector, **kwargs)
            elif name == "fill":
                (selector,) = _require(payload, name, "selector")
                page.fill(selector, str(payload.get("value") or ""), **kwargs)
            elif name == "type":
                (selector,) = _require(payload, name, "selector")
                text_value = payload.get("text", payload.get("value"))
                if payload.get("delay_ms") is not None:
                    kwargs["delay"] = int(payload["delay_ms"])
                page.type(selector, "" if text_value is None else str(text_value), **kwargs)
            elif name == "press":
                selector, key = _require(payload, name, "selector", "key")
                page.press(selector, str(key), **kwargs)
            elif name == "focus":
                (selector,) = _require(payload, name, "selector")
                page.focus(selector, **kwargs)
            elif name == "check":
                (selector,) = _require(payload, name, "selector")
                page.check(selector, **kwargs)
            elif name == "uncheck":
                (selector,) = _require(payload, name, "selector")
                page.uncheck(selector, **kwargs)
            elif name == "wait_for_selector":
                (selector,) = _require(payload, name, "selector")
                if payload.get("state"):
                    kwargs["state"] = str(payload["state"])
                page.wait_for_selector(selector, **kwargs)
            elif name == "wait_for_load_state":
                page.wait_for_load_state(str(payload.get("state") or "networkidle"), **kwargs)
            elif name == "wait":
                page.wait_for_timeout(int(payload.get("wait_ms", payload.get("duration_ms", 0))))
            elif name == "evaluate":
                script = payload.get("script") or payload.get("value")
                if not script:
                    raise ActionError(name, "requires script")
                if "args" in payload:
                    page.evaluate(script, payload.get("args"))
                else:
                    page.evaluate(script)
            elif name == "disable_animations":
                page.add_style_tag(content=str(payload.get("css", DISABLE_ANIMATIONS_CSS)))
            elif name == "scroll_into_view":
                (selector,) = _require(payload, name, "selector")
                page.evaluate(
                    "selector => { const el = document.querySelector(selector); if (el) el.scrollIntoView({behavior: 'instant', block: 'center', inline: 'center'}); }",
                    selector,
                )
            else:
                raise ActionError(name, "unsupported action type")
        except PlaywrightError as exc:
            raise ActionError(name, str(exc).splitlines()[0] if str(exc) else exc.__class__.__name__) from exc
        except (TypeError, ValueError) as exc:
            raise ActionError(name, str(exc)) from exc

    def capture(self, *, full_page: bool = True) -> CapturedState:
        if self._page is None:
            raise FatalError("Driver has not been started")
        try:
            if self._post_wait_ms:
                self._page.wait_for_timeout(self._post_wait_ms)
            image = self._page.screenshot(full_page=full_page)
        except PlaywrightError as exc:
            raise FatalError(f"Screenshot failed for {self._environment.key}: {exc}") from exc
        viewport = self._page.viewport_size or {}
        return CapturedState(
            image=image,
            url=self._page.url,
            width=viewport.get("width"),
            height=viewport.get("height"),
        )

    def close(self) -> None:
        for resource, label in (
            (self._context, "context"),
            (self._browser, "browser"),
        ):
            if resource is None:
                continue
            try:
                resource.close()
            except PlaywrightError as exc:
                LOGGER.debug("Failed to close %s for %s: %s", label, self._environment.key, exc)
        if self._playwright is not None:
            try:
                self._playwright.stop()
            except PlaywrightError as exc:
                LOGGER.debug("Failed to stop Playwright for %s: %s", self._environment.key, exc)
        self._page = None
        self._context = None
        self._browser = None
        self._playwright = None


def playwright_driver_factory(
    *,
    headless: bool = True,
    post_wait_ms: int = 0,
    base_url: Optional[str] = None,
) -> DriverFactory:
    def _factory(environment: EnvironmentDescriptor) -> UIDriver:
        return PlaywrightDriver(
            environment,
            headless=headless,
            post_wait_ms=post_wait_ms,
            base_url=base_url,
        )

    return _factory
