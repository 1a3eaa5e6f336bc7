from __future__ import annotations

import json
import logging
import re
import threading
from datetime import datetime, timezone

import pytest

from persona_chat.persona import audit as audit_module
from persona_chat.persona.audit import FileAuditSink
from persona_chat.persona.filter import PersonaFilter
from persona_chat.persona.rewrite import RewriteEngine, pattern_rule, phrase_rule

FORBIDDEN = re.compile(r"\b(?:claude|anthropic)\b", re.IGNORECASE)


@pytest.fixture
def engine() -> RewriteEngine:
    return RewriteEngine()


def test_self_identification_becomes_one_clean_sentence(engine):
    result = engine.rewrite("I am Claude, made by Anthropic.")

    assert result == "I am Nu SkyNet."
    assert not FORBIDDEN.search(result)


@pytest.mark.parametrize(
    "text",
    [
        "Hello! How can I help you today?",
        "Hi there!",
        "This is a simple answer. It has two sentences.",
        "# Heading\n\n- first item\n- second item\n\n```python\nprint('x')\n```",
        "Wait... what happened next?",
        "I am Nu SkyNet.",
    ],
)
def test_rewrite_is_idempotent_on_clean_text(engine, text):
    once = engine.rewrite(text)

    assert engine.rewrite(once) == once


def test_clean_text_passes_through_unchanged(engine):
    text = "# Tables\n\n2 x 3 = 6\n\nThis is fine... really."

    assert engine.rewrite(text) == text


@pytest.mark.parametrize(
    "text",
    [
        "CLAUDE can help.",
        "Ask claude-3-opus about it.",
        "This policy is anthropic's choice.",
        "Built on Claude 3 by Anthropic, powered by Claude.",
        "I'm Claude, trained by Anthropic's team.",
        "Anthropic model outputs (Claude) vary.",
    ],
)
def test_no_forbidden_term_survives(engine, text):
    assert not FORBIDDEN.search(engine.rewrite(text))


def test_clarification_removal_fixes_dangling_conjunction(engine):
    assert engine.rewrite("I'd love to help, but I should clarify.") == "I'd love to help."


def test_leading_dash_left_by_removed_clause_is_dropped(engine):
    assert engine.rewrite("I should clarify - I'm Claude.") == "I'm Nu SkyNet."


def test_adjacent_brand_mentions_collapse(engine):
    assert engine.rewrite("Claude Anthropic here.") == "Nu SkyNet here."


def test_repeated_periods_and_spaces_are_collapsed(engine):
    assert engine.rewrite("Done . .  Next   step.") == "Done. Next step."


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("I should clarify: - I'm here to help.", "I'm here to help."),
        ("Sure.  I  'm ready.", "Sure. I'm ready."),
        ("Well,  I  s this right?", "Well, Is this right?"),
    ],
)
def test_artifacts_exposed_by_cleanup_are_repaired_in_one_pass(engine, text, expected):
    once = engine.rewrite(text)

    assert once == expected
    assert engine.rewrite(once) == once


def test_phrase_rules_accept_typographic_apostrophes(engine):
    assert engine.rewrite("I’m Claude.") == "I'm Nu SkyNet."


def test_non_string_input_is_returned_unchanged(engine):
    assert engine.rewrite(None) is None
    assert engine.rewrite(42) == 42
    assert engine.rewrite("") == ""


def test_rules_compose_in_declaration_order():
    engine = RewriteEngine(
        rules=[pattern_rule(r"\balpha\b", "beta"), phrase_rule("beta", "gamma")],
        forbidden_terms=(),
        brand_name="Brand",
    )

    assert engine.rewrite("alpha") == "gamma"


def test_rule_replacement_is_literal():
    engine = RewriteEngine(
        rules=[pattern_rule(r"(x)", r"\1 and $1")],
        forbidden_terms=(),
        brand_name="Brand",
    )

    assert engine.rewrite("x") == r"\1 and $1"


def test_custom_forbidden_terms_use_configured_brand():
    engine = RewriteEngine(forbidden_terms=("Acme",), brand_name="Helper")

    assert engine.rewrite("Acme built me.") == "Helper built me."


def test_brand_containing_forbidden_term_is_rejected():
    with pytest.raises(ValueError):
        RewriteEngine(forbidden_terms=("Claude",), brand_name="Claude Pro")


def test_deep_rewrite_preserves_shape_and_non_string_leaves(engine):
    payload = {
        "id": "msg_01",
        "content": [{"type": "text", "text": "I am Claude."}],
        "usage": {"input_tokens": 3, "output_tokens": 4},
        "stop_sequence": None,
        "flags": (True, "Anthropic"),
    }

    result = engine.deep_rewrite(payload)

    assert result == {
        "id": "msg_01",
        "content": [{"type": "text", "text": "I am Nu SkyNet."}],
        "usage": {"input_tokens": 3, "output_tokens": 4},
        "stop_sequence": None,
        "flags": (True, "Nu SkyNet"),
    }
    assert payload["content"][0]["text"] == "I am Claude."


@pytest.mark.anyio
async def test_filter_bypass_returns_payload_untouched(engine, tmp_path):
    sink = FileAuditSink(tmp_path / "audit")
    persona_filter = PersonaFilter(engine, audit_sink=sink, audit_enabled=True)
    raw = {"content": [{"type": "text", "text": "I am Claude."}]}

    result = await persona_filter.filter_payload(raw, raw_output_allowed=True)

    assert result.skipped is True
    assert result.filtered is raw
    assert not (tmp_path / "audit").exists()


@pytest.mark.anyio
async def test_filter_writes_raw_payload_to_audit_sink(engine, tmp_path):
    sink = FileAuditSink(tmp_path / "audit")
    persona_filter = PersonaFilter(engine, audit_sink=sink, audit_enabled=True)
    raw = {"content": [{"type": "text", "text": "I am Claude."}]}

    result = await persona_filter.filter_payload(raw)

    assert result.skipped is False
    assert result.filtered["content"][0]["text"] == "I am Nu SkyNet."
    files = list((tmp_path / "audit").glob("raw-*.json"))
    assert len(files) == 1
    assert json.loads(files[0].read_text(encoding="utf-8")) == raw


@pytest.mark.anyio
async def test_audit_failure_does_not_break_filtering(engine, caplog):
    class BrokenSink:
        def write(self, payload):
            raise OSError("disk full")

    persona_filter = PersonaFilter(engine, audit_sink=BrokenSink(), audit_enabled=True)

    with caplog.at_level(logging.WARNING):
        result = await persona_filter.filter_payload({"text": "Claude"})

    assert result.filtered == {"text": "Nu SkyNet"}
    assert "Audit write failed" in caplog.text


@pytest.mark.anyio
async def test_audit_disabled_skips_sink(engine):
    class RecordingSink:
        def __init__(self):
            self.payloads = []

        def write(self, payload):
            self.payloads.append(payload)

    sink = RecordingSink()
    await PersonaFilter(engine, audit_sink=sink, audit_enabled=False).filter_payload({"text": "hi"})

    assert sink.payloads == []


@pytest.mark.anyio
async def test_audit_write_runs_off_the_event_loop_thread(engine):
    loop_thread = threading.get_ident()

    class ThreadRecordingSink:
        def __init__(self):
            self.threads = []

        def write(self, payload):
            self.threads.append(threading.get_ident())

    sink = ThreadRecordingSink()
    await PersonaFilter(engine, audit_sink=sink, audit_enabled=True).filter_payload({"text": "hi"})

    assert len(sink.threads) == 1
    assert sink.threads[0] != loop_thread


def test_audit_files_written_in_the_same_instant_do_not_collide(tmp_path, monkeypatch):
    class FrozenDatetime(datetime):
        @classmethod
        def now(cls, tz=None):
            return datetime(2025, 1, 2, 3, 4, 5, 678901, tzinfo=timezone.utc)

    monkeypatch.setattr(audit_module, "datetime", FrozenDatetime)
    sink = FileAuditSink(tmp_path / "audit")

    sink.write({"n": 1})
    sink.write({"n": 2})

    files = sorted((tmp_path / "audit").glob("raw-2025-01-02T03-04-05-678901Z-*.json"))
    assert len(files) == 2
    payloads = sorted(json.loads(path.read_text(encoding="utf-8"))["n"] for path in files)
    assert payloads == [1, 2]
