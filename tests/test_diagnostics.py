"""Tests for the SmartDiagnostics orchestrator."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from helpers import (
    FakeOutlineProvider,
    RecordingDriftClient,
    make_change,
    make_document,
    make_event,
    make_symbol,
)

from driftsense.config import FilterConfig, SmartDiagnosticsConfig
from driftsense.diagnostics import (
    NOTIFICATION_COOLDOWN_SECONDS,
    UNAVAILABLE_MESSAGE,
    SmartDiagnostics,
)
from driftsense.types import BufferedEdit, Range, ScopeKind, SymbolKind

_SOURCE = "function helper() {\n  const a = 1;\n  const b = 2;\n  const c = 3;\n}\n"


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _code_edit(line: int, version: int = 1):
    document = make_document(_SOURCE, version=version)
    return make_event(document, make_change(line, 12, line, 13, text="9", old_text=str(line)))


def _edits(count: int = 1) -> list[BufferedEdit]:
    return [
        BufferedEdit(changes=(make_change(i, 0, i, 1),), timestamp=0.0, version=i)
        for i in range(count)
    ]


class TestEventIntake:
    @pytest.mark.asyncio
    async def test_rapid_edits_dispatch_once_after_idle(self):
        client = RecordingDriftClient()
        provider = FakeOutlineProvider([make_symbol("helper", SymbolKind.FUNCTION, 0, 4)])
        diag = SmartDiagnostics(client=client, outline_provider=provider)

        for line in (1, 2, 3):
            diag.on_document_change(_code_edit(line))
            await asyncio.sleep(0.02)

        await asyncio.sleep(0.3)
        assert client.requests == []

        await asyncio.sleep(0.2)
        await diag.drain()

        assert len(client.requests) == 1
        request = client.requests[0]
        assert request.affected_range == Range.of(1, 12, 3, 13)
        assert request.content == _SOURCE
        assert request.scope is not None
        assert request.scope.name == "helper"
        assert request.scope.kind is ScopeKind.FUNCTION
        assert diag.get_stats() == {"total_changes": 3, "filtered_out": 0, "sent_to_lsp": 1}
        diag.dispose()

    @pytest.mark.asyncio
    async def test_save_flushes_without_waiting(self):
        client = RecordingDriftClient()
        diag = SmartDiagnostics(SmartDiagnosticsConfig(idle_ms=10_000), client=client)

        diag.on_document_change(_code_edit(1))
        task = diag.on_document_save(make_document(_SOURCE))
        assert task is not None
        await task

        assert len(client.requests) == 1
        assert diag.edit_buffer.has_buffered_edits("file:///test.ts") is False
        diag.dispose()

    @pytest.mark.asyncio
    async def test_save_without_buffer_does_nothing(self):
        client = RecordingDriftClient()
        diag = SmartDiagnostics(client=client)
        assert diag.on_document_save(make_document(_SOURCE)) is None
        assert client.requests == []

    @pytest.mark.asyncio
    async def test_insignificant_changes_are_counted_and_dropped(self):
        diag = SmartDiagnostics(client=RecordingDriftClient())
        doc = make_document("// new\n")
        diag.on_document_change(make_event(doc, make_change(0, 0, 0, 6, "// new", "// old")))

        assert diag.get_stats() == {"total_changes": 1, "filtered_out": 1, "sent_to_lsp": 0}
        assert diag.edit_buffer.has_buffered_edits(doc.uri) is False

    @pytest.mark.asyncio
    async def test_non_file_documents_ignored(self):
        diag = SmartDiagnostics(client=RecordingDriftClient())
        doc = make_document(_SOURCE, uri="untitled:Untitled-1")
        diag.on_document_change(make_event(doc, make_change(1, 0, 1, 1, "x", "y")))

        assert diag.get_stats()["total_changes"] == 0
        assert diag.on_document_save(doc) is None

    def test_change_outside_event_loop_is_not_buffered(self):
        diag = SmartDiagnostics(client=RecordingDriftClient())
        with pytest.raises(RuntimeError):
            diag.on_document_change(_code_edit(1))

        assert diag.edit_buffer.has_buffered_edits("file:///test.ts") is False

    @pytest.mark.asyncio
    async def test_disabled_ignores_events(self):
        diag = SmartDiagnostics(SmartDiagnosticsConfig(enabled=False))
        diag.on_document_change(_code_edit(1))
        assert diag.get_stats()["total_changes"] == 0

        diag.update_config(enabled=True)
        diag.on_document_change(_code_edit(1))
        assert diag.get_stats()["total_changes"] == 1
        diag.dispose()


class TestConfigUpdates:
    @pytest.mark.asyncio
    async def test_filter_update_applies_live(self):
        diag = SmartDiagnostics(client=RecordingDriftClient())
        doc = make_document("// new\n")
        event = make_event(doc, make_change(0, 0, 0, 6, "// new", "// old"))

        diag.on_document_change(event)
        assert diag.edit_buffer.has_buffered_edits(doc.uri) is False

        diag.update_config(filter={"ignore_comments": False})
        diag.on_document_change(event)
        assert diag.edit_buffer.has_buffered_edits(doc.uri) is True
        assert diag.config.filter == FilterConfig(ignore_comments=False)
        diag.dispose()

    @pytest.mark.asyncio
    async def test_idle_update_applies_live(self):
        client = RecordingDriftClient()
        diag = SmartDiagnostics(SmartDiagnosticsConfig(idle_ms=10_000), client=client)
        diag.update_config(idle_ms=20)

        diag.on_document_change(_code_edit(1))
        await asyncio.sleep(0.08)
        await diag.drain()

        assert len(client.requests) == 1
        assert diag.config.idle_ms == 20


class TestDispatch:
    @pytest.mark.asyncio
    async def test_client_not_running_skips_dispatch(self):
        client = RecordingDriftClient(running=False)
        diag = SmartDiagnostics(client=client)

        await diag.process_edits("file:///test.ts", make_document(_SOURCE), _edits())

        assert client.requests == []
        assert diag.get_stats()["sent_to_lsp"] == 0
        assert diag.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_default_client_is_not_running(self):
        diag = SmartDiagnostics()
        await diag.process_edits("file:///test.ts", make_document(_SOURCE), _edits())
        assert diag.get_stats()["sent_to_lsp"] == 0

    @pytest.mark.asyncio
    async def test_scope_failure_still_dispatches(self):
        client = RecordingDriftClient()
        provider = FakeOutlineProvider(error=TimeoutError("outline timed out"))
        diag = SmartDiagnostics(client=client, outline_provider=provider)

        await diag.process_edits("file:///test.ts", make_document(_SOURCE), _edits(2))

        assert len(client.requests) == 1
        assert client.requests[0].scope is None
        assert client.requests[0].affected_range == Range.of(0, 0, 1, 1)

    @pytest.mark.asyncio
    async def test_request_payload_shape(self):
        client = RecordingDriftClient()
        provider = FakeOutlineProvider(
            [
                make_symbol(
                    "Greeter",
                    SymbolKind.CLASS,
                    0,
                    4,
                    [make_symbol("greet", SymbolKind.METHOD, 1, 3)],
                )
            ]
        )
        diag = SmartDiagnostics(client=client, outline_provider=provider)
        document = make_document(_SOURCE, version=7)
        await diag.process_edits(document.uri, document, _edits(3)[1:])

        params = client.requests[0].to_params()
        assert params["uri"] == "file:///test.ts"
        assert params["version"] == 7
        assert params["affectedRange"] == {
            "start": {"line": 1, "character": 0},
            "end": {"line": 2, "character": 1},
        }
        assert params["scope"]["name"] == "greet"
        assert params["scope"]["kind"] == "method"
        assert params["scope"]["className"] == "Greeter"


class TestFailureBackoff:
    @pytest.mark.asyncio
    async def test_three_failures_warn_once(self):
        warnings: list[str] = []
        client = RecordingDriftClient(fail=True)
        diag = SmartDiagnostics(client=client, notify=warnings.append, clock=FakeClock())
        doc = make_document(_SOURCE)

        for _ in range(3):
            await diag.process_edits(doc.uri, doc, _edits())
        assert warnings == [UNAVAILABLE_MESSAGE]
        assert diag.consecutive_failures == 0
        # Failed dispatches still count as sent.
        assert diag.get_stats()["sent_to_lsp"] == 3

        await diag.process_edits(doc.uri, doc, _edits())
        assert warnings == [UNAVAILABLE_MESSAGE]
        assert diag.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_cooldown_suppresses_but_resets_streak(self):
        warnings: list[str] = []
        clock = FakeClock()
        diag = SmartDiagnostics(
            client=RecordingDriftClient(fail=True), notify=warnings.append, clock=clock
        )
        doc = make_document(_SOURCE)

        for _ in range(3):
            await diag.process_edits(doc.uri, doc, _edits())
        clock.now += 10
        for _ in range(3):
            await diag.process_edits(doc.uri, doc, _edits())

        assert len(warnings) == 1
        assert diag.consecutive_failures == 0

        clock.now += NOTIFICATION_COOLDOWN_SECONDS
        for _ in range(3):
            await diag.process_edits(doc.uri, doc, _edits())
        assert len(warnings) == 2

    @pytest.mark.asyncio
    async def test_success_resets_failure_streak(self):
        warnings: list[str] = []
        client = RecordingDriftClient(fail=True)
        diag = SmartDiagnostics(client=client, notify=warnings.append, clock=FakeClock())
        doc = make_document(_SOURCE)

        for _ in range(2):
            await diag.process_edits(doc.uri, doc, _edits())
        assert diag.consecutive_failures == 2

        client.fail = False
        await diag.process_edits(doc.uri, doc, _edits())
        assert diag.consecutive_failures == 0

        client.fail = True
        for _ in range(2):
            await diag.process_edits(doc.uri, doc, _edits())
        assert warnings == []

    @pytest.mark.asyncio
    async def test_default_notify_logs_warning(self):
        client = MagicMock(is_running=True)
        client.check_drift = AsyncMock(side_effect=ConnectionError("refused"))
        doc = make_document(_SOURCE)

        with patch("driftsense.diagnostics.logger") as mock_logger:
            diag = SmartDiagnostics(client=client, clock=FakeClock())
            for _ in range(3):
                await diag.process_edits(doc.uri, doc, _edits())

        assert client.check_drift.await_count == 3
        mock_logger.warning.assert_called_once_with(UNAVAILABLE_MESSAGE)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_dispose_drops_pending_edits(self):
        client = RecordingDriftClient()
        provider = FakeOutlineProvider([make_symbol("helper", SymbolKind.FUNCTION, 0, 4)])
        diag = SmartDiagnostics(
            SmartDiagnosticsConfig(idle_ms=30), client=client, outline_provider=provider
        )
        await diag.scope_tracker.get_enclosing_scope_for_range(
            make_document(_SOURCE), Range.of(1, 0, 1, 1)
        )

        diag.on_document_change(_code_edit(1))
        diag.dispose()
        await asyncio.sleep(0.08)
        await diag.drain()

        assert client.requests == []
        assert diag.scope_tracker.cache_info()["size"] == 0

    @pytest.mark.asyncio
    async def test_outline_cache_size_is_configurable(self):
        provider = FakeOutlineProvider([make_symbol("helper", SymbolKind.FUNCTION, 0, 4)])
        diag = SmartDiagnostics(
            client=RecordingDriftClient(), outline_provider=provider, cache_size=1
        )

        for uri in ("file:///a.ts", "file:///b.ts"):
            await diag.process_edits(uri, make_document(_SOURCE, uri=uri), _edits())

        assert diag.scope_tracker.cache_info()["size"] == 1
        assert provider.calls == 2

    @pytest.mark.asyncio
    async def test_reset_stats(self):
        diag = SmartDiagnostics(client=RecordingDriftClient())
        diag.on_document_change(make_event(make_document("\n"), make_change(0, 0, text=" ")))
        assert diag.get_stats()["total_changes"] == 1

        diag.reset_stats()
        assert diag.get_stats() == {"total_changes": 0, "filtered_out": 0, "sent_to_lsp": 0}

    @pytest.mark.asyncio
    async def test_context_manager(self):
        client = RecordingDriftClient()
        with SmartDiagnostics(SmartDiagnosticsConfig(idle_ms=20), client=client) as diag:
            diag.on_document_change(_code_edit(1))
        await asyncio.sleep(0.05)
        assert client.requests == []
