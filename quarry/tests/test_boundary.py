"""Tests for the isolation boundary"""

from unittest.mock import MagicMock

import pytest

from quarry.core.exceptions import PermissionDenied, RenderFailure
from quarry.plugins.boundary import ACTION_DISABLE, ACTION_RETRY, IsolationBoundary, RenderProps
from quarry.plugins.extensions import Contribution, ToolbarButtonOptions, WidgetOptions
from quarry.plugins.manifest import ExtensionKind


def _contribution(render, plugin_id="bar"):
    return Contribution(plugin_id, ExtensionKind.WIDGET, WidgetOptions(id="panel", name="Panel", render=render))


def _props():
    return RenderProps(api=MagicMock(), settings={"a": 1}, theme="dark", is_dark=True)


class TestIsolationBoundary:
    """Test failure containment, retry and disable"""

    def test_successful_render(self):
        boundary = IsolationBoundary(_contribution(lambda props: f"theme={props.theme}"), _props, MagicMock())

        outcome = boundary.render()

        assert outcome.ok
        assert outcome.value == "theme=dark"
        assert outcome.fallback is None

    def test_failure_is_contained(self):
        on_disable = MagicMock()
        boundary = IsolationBoundary(_contribution(MagicMock(side_effect=ValueError("bad markdown"))),
                                     _props, on_disable)

        outcome = boundary.render()

        assert not outcome.ok
        assert isinstance(outcome.failure, RenderFailure)
        assert outcome.failure.plugin_id == "bar"
        assert outcome.failure.options_id == "panel"
        assert outcome.fallback.message == "bad markdown"
        assert outcome.fallback.actions == (ACTION_RETRY, ACTION_DISABLE)
        assert boundary.has_error
        on_disable.assert_not_called()

    def test_permission_denied_is_contained(self):
        def render(props):
            raise PermissionDenied("bar", "navigation")

        outcome = IsolationBoundary(_contribution(render), _props, MagicMock()).render()

        assert not outcome.ok
        assert isinstance(outcome.failure.cause, PermissionDenied)

    def test_stays_in_fallback_until_retry(self):
        render = MagicMock(side_effect=[RuntimeError("boom"), "recovered"])
        boundary = IsolationBoundary(_contribution(render), _props, MagicMock())

        boundary.render()
        assert not boundary.render().ok
        assert render.call_count == 1

        outcome = boundary.retry()

        assert outcome.ok
        assert outcome.value == "recovered"
        assert not boundary.has_error

    def test_retry_reuses_same_props(self):
        props_factory = MagicMock(side_effect=lambda: _props())
        render = MagicMock(side_effect=[RuntimeError("boom"), "ok"])
        boundary = IsolationBoundary(_contribution(render), props_factory, MagicMock())

        boundary.render()
        boundary.retry()

        props_factory.assert_called_once()
        assert render.call_args_list[0].args[0] is render.call_args_list[1].args[0]

    def test_each_render_gets_fresh_props(self):
        props_factory = MagicMock(side_effect=lambda: _props())
        render = MagicMock(return_value="ok")
        boundary = IsolationBoundary(_contribution(render), props_factory, MagicMock())

        boundary.render()
        boundary.render()

        assert props_factory.call_count == 2
        assert render.call_args_list[0].args[0] is not render.call_args_list[1].args[0]

    def test_disable_escalates_once(self):
        on_disable = MagicMock()
        boundary = IsolationBoundary(_contribution(MagicMock(side_effect=RuntimeError("boom"))), _props, on_disable)

        boundary.render()
        boundary.disable()
        boundary.disable()

        on_disable.assert_called_once()
        assert on_disable.call_args.args[0] == "bar"
        assert "boom" in on_disable.call_args.args[1]
        assert boundary.render().fallback.actions == (ACTION_RETRY,)

    def test_auto_disable_after_consecutive_failures(self):
        on_disable = MagicMock()
        render = MagicMock(side_effect=RuntimeError("boom"))
        boundary = IsolationBoundary(_contribution(render), _props, on_disable, auto_disable_after=3)

        boundary.render()
        boundary.retry()
        on_disable.assert_not_called()

        boundary.retry()

        on_disable.assert_called_once()
        assert "auto-disabled after 3 failures" in on_disable.call_args.args[1]

    def test_success_resets_failure_count(self):
        on_disable = MagicMock()
        render = MagicMock(side_effect=[RuntimeError("a"), "ok", RuntimeError("b")])
        boundary = IsolationBoundary(_contribution(render), _props, on_disable, auto_disable_after=2)

        boundary.render()
        assert boundary.retry().ok
        assert not boundary.render().ok

        assert boundary.consecutive_failures == 1
        on_disable.assert_not_called()

    def test_boundaries_are_independent(self):
        broken = IsolationBoundary(_contribution(MagicMock(side_effect=RuntimeError("x")), "bar"),
                                   _props, MagicMock())
        healthy = IsolationBoundary(_contribution(lambda props: "fine", "baz"), _props, MagicMock())

        assert not broken.render().ok
        assert healthy.render().ok


class TestToolbarInvoke:

    def test_invoke_passes_api(self):
        on_click = MagicMock(return_value="done")
        button = Contribution("foo", ExtensionKind.TOOLBAR_BUTTON,
                              ToolbarButtonOptions(id="btn", label="Btn", on_click=on_click))
        props = _props()
        boundary = IsolationBoundary(button, lambda: props, MagicMock())

        outcome = boundary.invoke()

        assert outcome.value == "done"
        on_click.assert_called_once_with(props.api)

    def test_invoke_failure_then_click_again(self):
        on_click = MagicMock(side_effect=[RuntimeError("offline"), "done"])
        button = Contribution("foo", ExtensionKind.TOOLBAR_BUTTON,
                              ToolbarButtonOptions(id="btn", label="Btn", on_click=on_click))
        boundary = IsolationBoundary(button, _props, MagicMock())

        assert not boundary.invoke().ok
        assert boundary.invoke().ok

    def test_invoke_rejects_render_kinds(self):
        boundary = IsolationBoundary(_contribution(lambda props: None), _props, MagicMock())

        with pytest.raises(TypeError):
            boundary.invoke()
