"""Failure containment around a single rendered plugin contribution.

The boundary calls plugin code, turns any exception into a typed
:class:`RenderOutcome` and offers the host a fallback with "retry" and
"disable" actions. Nothing a plugin raises propagates past it.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple


from quarry.core.exceptions import RenderFailure
from quarry.core.logger import get_logger
from quarry.plugins.capabilities import PluginAPI
from quarry.plugins.extensions import Contribution
from quarry.plugins.manifest import ExtensionKind

logger = get_logger("quarry.boundary")

ACTION_RETRY = "retry"
ACTION_DISABLE = "disable"


@dataclass
class RenderProps:
    """What a sidebar mode or widget render entry receives"""
    api: PluginAPI
    settings: Dict[str, Any] = field(default_factory=dict)
    theme: str = "light"
    is_dark: bool = False


@dataclass(frozen=True)
class FallbackView:
    plugin_id: str
    options_id: str
    message: str
    actions: Tuple[str, ...] = (ACTION_RETRY, ACTION_DISABLE)


@dataclass
class RenderOutcome:
    ok: bool
    value: Any = None
    failure: Optional[RenderFailure] = None
    fallback: Optional[FallbackView] = None


class IsolationBoundary:
    """Wraps one contribution; isolation is per contribution, never global"""

    def __init__(self,
                 contribution: Contribution,
                 props_factory: Callable[[], RenderProps],
                 on_disable: Callable[[str, str], Any],
                 auto_disable_after: int = 0):
        self.contribution = contribution
        self._props_factory = props_factory
        self._on_disable = on_disable
        self.auto_disable_after = auto_disable_after
        self._props: Optional[RenderProps] = None
        self.error: Optional[RenderFailure] = None
        self.consecutive_failures = 0
        self.disabled = False

    @property
    def plugin_id(self) -> str:
        return self.contribution.plugin_id

    @property
    def has_error(self) -> bool:
        return self.error is not None

    def render(self) -> RenderOutcome:
        """Render the contribution, or return the fallback while in error"""
        if self.error is not None:
            return self._failed(self.error)

        self._props = self._props_factory()
        return self._attempt(self._props)

    def _attempt(self, props: RenderProps) -> RenderOutcome:
        try:
            value = self._call(props)
        except Exception as e:
            return self._trap(e)

        self.consecutive_failures = 0
        return RenderOutcome(ok=True, value=value)

    def invoke(self) -> RenderOutcome:
        """Run a toolbar button's action inside the boundary"""
        if self.contribution.kind != ExtensionKind.TOOLBAR_BUTTON:
            raise TypeError("invoke() is only valid for toolbar buttons")
        self.error = None
        return self.render()

    def retry(self) -> RenderOutcome:
        """Clear the failure flag and render again with the same props"""
        logger.info("Retrying plugin contribution", plugin_id=self.plugin_id,
                    options_id=self.contribution.options.id)
        self.error = None
        if self._props is None:
            return self.render()
        return self._attempt(self._props)

    def disable(self, reason: Optional[str] = None) -> None:
        """Escalate to disabling the owning plugin"""
        if self.disabled:
            return
        self.disabled = True
        if reason is None:
            reason = str(self.error) if self.error else "disabled from error boundary"
        self._on_disable(self.plugin_id, reason)

    def _call(self, props: RenderProps) -> Any:
        options = self.contribution.options
        if self.contribution.kind == ExtensionKind.TOOLBAR_BUTTON:
            return options.on_click(props.api)
        return options.render(props)

    def _trap(self, exc: Exception) -> RenderOutcome:
        options_id = self.contribution.options.id
        self.error = RenderFailure(self.plugin_id, options_id, exc)
        self.consecutive_failures += 1

        logger.error(
            "Plugin contribution failed",
            plugin_id=self.plugin_id,
            options_id=options_id,
            kind=self.contribution.kind.value,
            error=str(exc),
            exc_info=exc,
        )

        if self.auto_disable_after and self.consecutive_failures >= self.auto_disable_after:
            logger.warning("Auto-disabling plugin after repeated failures", plugin_id=self.plugin_id,
                           failures=self.consecutive_failures)
            self.disable(f"auto-disabled after {self.consecutive_failures} failures: {exc}")

        return self._failed(self.error)

    def _failed(self, failure: RenderFailure) -> RenderOutcome:
        actions = (ACTION_RETRY,) if self.disabled else (ACTION_RETRY, ACTION_DISABLE)
        fallback = FallbackView(
            plugin_id=self.plugin_id,
            options_id=self.contribution.options.id,
            message=str(failure.cause) or type(failure.cause).__name__,
            actions=actions,
        )
        return RenderOutcome(ok=False, failure=failure, fallback=fallback)
