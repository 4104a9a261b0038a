# Copyright (c) 2026 Heureum AI. All rights reserved.

"""Tests for the compaction engine: estimation, decision, scoring, merge and render."""

import random
from datetime import datetime, timedelta, timezone

import pytest

from class_chat.models import AuthorKind, Citation
from class_chat.schemas.compaction import (
    ChatCompactionSummary,
    CompactionAnchor,
    CompactionReason,
    CompactionTimeline,
    KeyTerm,
)
from class_chat.services.compaction import (
    CompactionSettings,
    SalienceWeights,
    build_compaction_result,
    collect_compaction_candidates,
    decide_compaction,
    estimate_prompt_tokens,
    estimate_tokens,
    is_after_anchor,
    merge_summary,
    render_memory_text,
    score_turn,
    select_chronological_highlights,
    sort_messages_chronologically,
)
from class_chat.services.compaction.renderer import MEMORY_FOOTER, MEMORY_HEADER
from class_chat.services.compaction.text import (
    compact_line,
    extract_terms,
    first_sentence,
    unique_tail,
)
from conftest import T0, conversation, turn

NOW = datetime(2026, 3, 3, 12, 0, tzinfo=timezone.utc)


def _anchor_at(message, turn_count: int = 0) -> CompactionAnchor:
    """Anchor pointing at the given message."""
    return CompactionAnchor(
        created_at=message.created_at, message_id=message.id, turn_count=turn_count
    )


def _summary(anchor: CompactionAnchor, **overrides) -> ChatCompactionSummary:
    """Minimal valid summary anchored at ``anchor``."""
    fields = dict(
        version="v1",
        generated_at=NOW,
        compacted_through=anchor,
        key_terms=[],
        resolved_facts=[],
        open_questions=[],
        student_needs=[],
        timeline=CompactionTimeline(from_=T0, to=anchor.created_at, highlights=[]),
    )
    fields.update(overrides)
    return ChatCompactionSummary(**fields)


def _torque_turns(count: int):
    """Long, uniformly-scored turns that push the prompt over 80% of the budget."""
    filler = "lever arm moment inertia " * 38
    return [
        turn(i, content=f"Torque note {i}: angular acceleration depends on lever arm length. {filler}")
        for i in range(count)
    ]


TORQUE_QUERY = "How does torque relate to angular acceleration"


# ---------------------------------------------------------------------------
# Token estimation
# ---------------------------------------------------------------------------


class TestEstimateTokens:
    """Tests for the character-heuristic token estimator."""

    def test_empty_is_one(self):
        assert estimate_tokens("") == 1

    def test_none_tolerated(self):
        assert estimate_tokens(None) == 1

    def test_ceiling_division(self):
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_zero_chars_per_token_treated_as_one(self):
        assert estimate_tokens("abc", chars_per_token=0) == 3

    def test_prompt_joins_with_newlines(self):
        """Pending message and window contents are joined by newlines."""
        # "ab\ncd" is 5 characters -> 2 tokens
        assert estimate_prompt_tokens("ab", [turn(0, content="cd")]) == 2


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class TestCompactionSettings:
    """Tests for tunable defaults and clamping."""

    def test_defaults(self):
        s = CompactionSettings()
        assert (s.recent_turns, s.trigger_turns, s.min_new_turns) == (12, 30, 6)
        assert s.pressure_threshold == 0.8
        assert s.usable_budget_tokens == 10_600

    def test_clamps(self):
        s = CompactionSettings(recent_turns=0, trigger_turns=1, min_new_turns=0)
        assert s.recent_turns == 2
        assert s.trigger_turns == 4
        assert s.min_new_turns == 1

    def test_budget_floor(self):
        s = CompactionSettings(context_window_tokens=100, output_token_reserve=200)
        assert s.usable_budget_tokens == 1


# ---------------------------------------------------------------------------
# Chronological normalization
# ---------------------------------------------------------------------------


class TestChronology:
    """Tests for ordering and candidate window collection."""

    def test_sort_ignores_input_order(self):
        messages = conversation(10)
        shuffled = list(messages)
        random.Random(7).shuffle(shuffled)
        assert sort_messages_chronologically(shuffled) == messages

    def test_ties_broken_by_id(self):
        a = turn(1, created_at=T0)
        b = turn(2, created_at=T0)
        assert sort_messages_chronologically([b, a]) == [a, b]

    def test_sort_does_not_mutate_input(self):
        messages = list(reversed(conversation(3)))
        before = list(messages)
        sort_messages_chronologically(messages)
        assert messages == before

    def test_is_after_anchor_strict(self):
        anchor_msg = turn(5)
        anchor = _anchor_at(anchor_msg)
        assert not is_after_anchor(anchor_msg, anchor)
        assert not is_after_anchor(turn(4), anchor)
        assert is_after_anchor(turn(6), anchor)

    def test_is_after_anchor_same_timestamp_uses_id(self):
        anchor = CompactionAnchor(created_at=T0, message_id="msg-0005", turn_count=0)
        assert is_after_anchor(turn(6, created_at=T0), anchor)
        assert not is_after_anchor(turn(4, created_at=T0), anchor)

    def test_no_candidates_within_recent_window(self):
        assert collect_compaction_candidates(conversation(12), 12, None) == []

    def test_candidates_exclude_recent_turns(self):
        messages = conversation(20)
        assert collect_compaction_candidates(messages, 12, None) == messages[:8]

    def test_candidates_start_after_anchor(self):
        messages = conversation(20)
        summary = _summary(_anchor_at(messages[3]))
        assert collect_compaction_candidates(messages, 12, summary) == messages[4:8]


# ---------------------------------------------------------------------------
# Decision engine
# ---------------------------------------------------------------------------


class TestDecideCompaction:
    """Tests for decide_compaction rule ordering."""

    def test_below_trigger(self):
        """Scenario A: a short session never compacts."""
        decision = decide_compaction(conversation(5), None, "hi", CompactionSettings(trigger_turns=30))
        assert decision.reason == CompactionReason.BELOW_TRIGGER
        assert decision.should_compact is False

    def test_no_new_turns(self):
        messages = conversation(30)
        summary = _summary(_anchor_at(messages[17], turn_count=18))
        decision = decide_compaction(messages, summary, "hi")
        assert decision.reason == CompactionReason.NO_NEW_TURNS
        assert decision.unsummarized_turn_count == 0
        assert decision.should_compact is False

    def test_token_pressure(self):
        decision = decide_compaction(_torque_turns(35), None, TORQUE_QUERY)
        assert decision.reason == CompactionReason.TOKEN_PRESSURE
        assert decision.should_compact is True
        assert decision.pressure_ratio >= 0.8
        assert decision.pressure_ratio == pytest.approx(decision.estimated_prompt_tokens / 10_600)

    def test_message_count_trigger(self):
        decision = decide_compaction(conversation(60), None, "hi")
        assert decision.reason == CompactionReason.MESSAGE_COUNT_TRIGGER
        assert decision.should_compact is True
        assert decision.unsummarized_turn_count == 48

    def test_low_context_pressure(self):
        decision = decide_compaction(conversation(40), None, "hi")
        assert decision.reason == CompactionReason.LOW_CONTEXT_PRESSURE
        assert decision.should_compact is False
        assert decision.unsummarized_turn_count == 28

    def test_input_order_irrelevant(self):
        messages = conversation(60)
        assert decide_compaction(messages, None, "hi") == decide_compaction(
            list(reversed(messages)), None, "hi"
        )

    def test_custom_tunables(self):
        s = CompactionSettings(recent_turns=4, trigger_turns=14, min_new_turns=2)
        decision = decide_compaction(conversation(28), None, "hi", s)
        assert decision.reason == CompactionReason.MESSAGE_COUNT_TRIGGER

    def test_pressure_threshold_override(self):
        s = CompactionSettings(pressure_threshold=0.01)
        decision = decide_compaction(conversation(40), None, "hi", s)
        assert decision.reason == CompactionReason.TOKEN_PRESSURE

    def test_no_resummarization_of_covered_turns(self):
        """Batches entirely at or before the anchor never trigger compaction."""
        messages = conversation(60)
        result = build_compaction_result(messages, None, "kinematics", now=NOW)
        anchor = result.summary.compacted_through
        covered = [m for m in messages if (m.created_at, m.id) <= (anchor.created_at, anchor.message_id)]
        decision = decide_compaction(covered, result.summary, "kinematics")
        assert decision.reason in (CompactionReason.NO_NEW_TURNS, CompactionReason.BELOW_TRIGGER)
        assert decision.should_compact is False


# ---------------------------------------------------------------------------
# Salience scoring
# ---------------------------------------------------------------------------


class TestScoreTurn:
    """Tests for score_turn signal weights."""

    def test_recency_base(self):
        assert score_turn(turn(0, content="notes on vectors"), 0, 4, set()) == pytest.approx(1.25)
        assert score_turn(turn(0, content="notes on vectors"), 3, 4, set()) == pytest.approx(2.0)

    def test_student_question(self):
        score = score_turn(turn(0, content="What is a vector?"), 0, 4, set())
        assert score == pytest.approx(2.75)

    def test_student_confusion(self):
        score = score_turn(turn(0, content="I am stuck on this"), 0, 4, set())
        assert score == pytest.approx(2.55)

    def test_confusion_case_insensitive(self):
        score = score_turn(turn(0, content="HELP with vectors"), 0, 4, set())
        assert score == pytest.approx(2.55)

    def test_assistant_question_not_rewarded(self):
        score = score_turn(turn(1, content="Why? Because forces balance."), 0, 4, set())
        assert score == pytest.approx(1.25)

    def test_assistant_citation_and_resolution(self):
        message = turn(
            1,
            content="Therefore the net force is zero.",
            citations=[Citation(source_label="Blueprint Context")],
        )
        assert score_turn(message, 0, 4, set()) == pytest.approx(3.05)

    def test_query_overlap_counts_each_occurrence(self):
        message = turn(0, content="velocity velocity acceleration")
        assert score_turn(message, 0, 4, {"velocity"}) == pytest.approx(2.85)

    def test_custom_weights(self):
        weights = SalienceWeights(question=10.0)
        score = score_turn(turn(0, content="Why?"), 0, 1, set(), weights)
        assert score == pytest.approx(12.0)


class TestSelectChronologicalHighlights:
    """Tests for top-N selection returned in chronological order."""

    def test_empty(self):
        assert select_chronological_highlights([], set()) == []

    def test_caps_at_eighteen(self):
        selected = select_chronological_highlights(conversation(30), set())
        assert len(selected) == 18
        assert selected == sort_messages_chronologically(selected)

    def test_uniform_turns_keep_latest(self):
        candidates = conversation(20)
        assert select_chronological_highlights(candidates, set()) == candidates[2:]

    def test_signal_beats_recency(self):
        candidates = conversation(5)
        candidates[0] = turn(0, content="I'm confused about vectors?")
        selected = select_chronological_highlights(candidates, set(), limit=1)
        assert selected == [candidates[0]]

    def test_result_is_chronological(self):
        candidates = conversation(6)
        candidates[4] = turn(4, content="Can you help? I'm stuck.")
        candidates[1] = turn(1, content="Therefore remember this.", kind=AuthorKind.ASSISTANT)
        selected = select_chronological_highlights(candidates, set(), limit=3)
        assert [m.id for m in selected] == ["msg-0001", "msg-0004", "msg-0005"]


# ---------------------------------------------------------------------------
# Text utilities
# ---------------------------------------------------------------------------


class TestTextUtilities:
    """Tests for term extraction and line compaction."""

    def test_extract_terms_drops_stop_words_and_short_tokens(self):
        assert extract_terms("The Velocity of a car, velocity!") == ["velocity", "car", "velocity"]

    def test_extract_terms_keeps_underscores_and_digits(self):
        assert extract_terms("F_net = 10N") == ["f_net", "10n"]

    def test_compact_line_collapses_whitespace(self):
        assert compact_line("a   b\n\t c ") == "a b c"

    def test_compact_line_clamps(self):
        result = compact_line("x" * 200)
        assert len(result) == 160
        assert result.endswith("...")

    def test_compact_line_exact_limit_unchanged(self):
        assert compact_line("x" * 160) == "x" * 160

    def test_compact_line_strips_before_ellipsis(self):
        result = compact_line("x" * 156 + " " + "y" * 50)
        assert result == "x" * 156 + "..."

    def test_first_sentence(self):
        assert first_sentence("First one. Second one.") == "First one."
        assert first_sentence("Is it? Yes.") == "Is it?"
        assert first_sentence("  No terminator  ") == "No terminator"

    def test_unique_tail(self):
        assert unique_tail(["a", "", "b", "a", " ", "c"], 2) == ["b", "c"]


# ---------------------------------------------------------------------------
# Summary merger
# ---------------------------------------------------------------------------


def _projectile_candidates():
    """Six turns of a projectile-motion exchange."""
    return [
        turn(0, content="I am stuck on projectile motion. Can you help?"),
        turn(
            1,
            content="Projectile motion splits into horizontal and vertical parts. Each is independent.",
            citations=[Citation(source_label="Blueprint Context")],
        ),
        turn(2, content="What is the range formula?"),
        turn(3, content="Therefore the range is v^2 sin(2θ)/g. Remember the angle."),
        turn(4, content="ok thanks"),
        turn(5, content="Sure."),
    ]


class TestMergeSummary:
    """Tests for merge_summary."""

    def test_first_merge(self):
        candidates = _projectile_candidates()
        summary = merge_summary(
            None, candidates, candidates, extract_terms("range of a projectile"), now=NOW
        )

        assert summary.version == "v1"
        assert summary.generated_at == NOW
        assert summary.compacted_through.message_id == "msg-0005"
        assert summary.compacted_through.turn_count == 6
        assert summary.compacted_through.retained_turn_count == 6
        assert summary.timeline.from_ == candidates[0].created_at
        assert summary.timeline.to == candidates[5].created_at
        assert summary.resolved_facts == [
            "Projectile motion splits into horizontal and vertical parts.",
            "Therefore the range is v^2 sin(2θ)/g.",
            "Sure.",
        ]
        assert summary.open_questions == [
            "I am stuck on projectile motion.",
            "What is the range formula?",
        ]
        assert summary.student_needs == ["I am stuck on projectile motion."]
        assert len(summary.timeline.highlights) == 6

    def test_key_terms_ranked(self):
        candidates = _projectile_candidates()
        summary = merge_summary(
            None, candidates, candidates, extract_terms("range of a projectile"), now=NOW
        )
        terms = [t.term for t in summary.key_terms]
        assert terms[:3] == ["projectile", "motion", "range"]
        assert all(t.weight == 2.0 for t in summary.key_terms[:3])
        assert len(terms) == 12
        # Three-letter terms are only tracked when the query mentions them.
        assert "can" not in terms
        assert "sin" not in terms

    def test_short_query_terms_tracked(self):
        selected = [turn(0, content="what is sin of angle")]
        summary = merge_summary(None, selected, selected, ["sin"], now=NOW)
        assert {t.term for t in summary.key_terms} == {"sin", "angle"}

    def test_key_term_last_seen(self):
        selected = [turn(0, content="gravity pulls"), turn(2, content="gravity again")]
        summary = merge_summary(None, selected, selected, [], now=NOW)
        gravity = next(t for t in summary.key_terms if t.term == "gravity")
        assert gravity.occurrences == 2
        assert gravity.last_seen == selected[1].created_at

    def test_second_merge_accumulates(self):
        first_batch = _projectile_candidates()
        first = merge_summary(None, first_batch, first_batch, ["projectile"], now=NOW)

        second_batch = [
            turn(6, content="Does projectile range depend on mass?"),
            turn(7, content="Sure."),
            turn(8, content="What about air resistance?"),
            turn(9, content="This means the range shrinks."),
        ]
        second = merge_summary(first, second_batch[1:], second_batch, ["projectile"], now=NOW)

        assert second.compacted_through.turn_count == 6 + 4
        assert second.compacted_through.retained_turn_count == 6 + 3
        assert second.timeline.from_ == first.timeline.from_
        assert (second.compacted_through.created_at, second.compacted_through.message_id) > (
            first.compacted_through.created_at,
            first.compacted_through.message_id,
        )
        # Duplicate "Sure." keeps its first position.
        assert second.resolved_facts.count("Sure.") == 1
        assert second.resolved_facts[-1] == "This means the range shrinks."
        assert len(second.timeline.highlights) == 8
        assert second.timeline.highlights[-1] == "This means the range shrinks."

    def test_previous_weights_carry_over(self):
        previous = _summary(
            _anchor_at(turn(3), turn_count=4),
            key_terms=[KeyTerm(term="torque", weight=2.5, occurrences=3, last_seen=T0)],
        )
        summary = merge_summary(previous, [turn(4, content="torque again")], [turn(4)], [], now=NOW)
        torque = next(t for t in summary.key_terms if t.term == "torque")
        assert torque.weight == 3.5
        assert torque.occurrences == 4

    def test_previous_summary_unchanged(self):
        previous = _summary(_anchor_at(turn(3), turn_count=4))
        before = previous.model_copy(deep=True)
        merge_summary(previous, [turn(4)], [turn(4)], [], now=NOW)
        assert previous == before

    def test_lists_bounded(self):
        selected = [
            turn(i, content=f"Fact number {i}. More detail.", kind=AuthorKind.ASSISTANT)
            for i in range(20)
        ]
        summary = merge_summary(None, selected, selected, [], now=NOW)
        assert len(summary.resolved_facts) == 8
        assert summary.resolved_facts[-1] == "Fact number 19."
        assert len(summary.timeline.highlights) == 8
        assert len(summary.key_terms) <= 12

    def test_lists_stay_bounded_over_many_passes(self):
        def mixed_turn(i):
            if i % 2 == 0:
                return turn(i, content=f"I'm stuck on vector{i} and confused. Why does angle{i} matter?")
            return turn(
                i,
                content=f"Therefore moment{i} balances lever{i}. Remember pivot{i}.",
                citations=[Citation(source_label="Source 1", snippet="levers")],
            )

        messages = [mixed_turn(i) for i in range(12)]
        summary = None
        for n in range(10):
            start = len(messages)
            messages += [mixed_turn(i) for i in range(start, start + 12)]
            result = build_compaction_result(
                messages, summary, "why does the angle matter?", now=NOW + timedelta(minutes=n)
            )
            assert result is not None
            if summary is not None:
                assert result.summary.compacted_through.turn_count > (
                    summary.compacted_through.turn_count
                )
            summary = result.summary
            assert len(summary.key_terms) <= 12
            assert len(summary.resolved_facts) <= 8
            assert len(summary.open_questions) <= 8
            assert len(summary.student_needs) <= 8
            assert len(summary.timeline.highlights) <= 8

        assert len(summary.key_terms) == 12
        assert len(summary.resolved_facts) == 8
        assert len(summary.open_questions) == 8
        assert len(summary.student_needs) == 8
        assert len(summary.timeline.highlights) == 8

    def test_empty_selection_rejected(self):
        with pytest.raises(ValueError):
            merge_summary(None, [], [], [])

    def test_confusion_and_question_on_same_turn(self):
        """Scenario D: one turn lands in both open questions and student needs."""
        selected = [turn(0, content="I'm stuck and confused. Why does the ramp angle matter?")]
        summary = merge_summary(None, selected, selected, [], now=NOW)
        assert summary.open_questions == ["I'm stuck and confused."]
        assert summary.student_needs == ["I'm stuck and confused."]


# ---------------------------------------------------------------------------
# Full pass
# ---------------------------------------------------------------------------


class TestBuildCompactionResult:
    """Tests for build_compaction_result end to end."""

    def test_none_without_candidates(self):
        assert build_compaction_result(conversation(10), None, "hi") is None

    def test_token_pressure_scenario(self):
        """Scenario B then C: compact under pressure, then nothing new to fold."""
        messages = _torque_turns(35)
        decision = decide_compaction(messages, None, TORQUE_QUERY)
        assert decision.reason == CompactionReason.TOKEN_PRESSURE

        result = build_compaction_result(messages, None, TORQUE_QUERY, now=NOW)
        assert result is not None
        terms = {t.term for t in result.summary.key_terms}
        assert "torque" in terms
        assert result.summary.compacted_through.message_id == messages[22].id
        assert result.summary.compacted_through.turn_count == 23
        assert result.summary.compacted_through.retained_turn_count == 18
        assert result.summary_text == render_memory_text(result.summary)

        rerun = decide_compaction(messages, result.summary, TORQUE_QUERY)
        assert rerun.reason == CompactionReason.NO_NEW_TURNS
        assert rerun.should_compact is False

    def test_turn_count_accumulates_across_passes(self):
        first_window = conversation(40)
        first = build_compaction_result(first_window, None, "kinematics", now=NOW)
        assert first.summary.compacted_through.turn_count == 28

        second_window = conversation(60)
        second = build_compaction_result(second_window, first.summary, "kinematics", now=NOW)
        candidates = collect_compaction_candidates(second_window, 12, first.summary)
        assert second.summary.compacted_through.turn_count == 28 + len(candidates)
        assert (second.summary.compacted_through.created_at, second.summary.compacted_through.message_id) > (
            first.summary.compacted_through.created_at,
            first.summary.compacted_through.message_id,
        )

    def test_output_independent_of_input_order(self):
        messages = conversation(40)
        a = build_compaction_result(messages, None, "kinematics", now=NOW)
        b = build_compaction_result(list(reversed(messages)), None, "kinematics", now=NOW)
        assert a == b

    def test_recent_turns_never_compacted(self):
        messages = conversation(40)
        result = build_compaction_result(messages, None, "kinematics", now=NOW)
        recent_ids = {m.id for m in messages[-12:]}
        assert result.summary.compacted_through.message_id not in recent_ids

    def test_uses_settings_selection_limit(self):
        s = CompactionSettings(max_selected_turns=3)
        result = build_compaction_result(conversation(40), None, "kinematics", s, now=NOW)
        assert result.summary.compacted_through.retained_turn_count == 3


# ---------------------------------------------------------------------------
# Memory renderer
# ---------------------------------------------------------------------------


class TestRenderMemoryText:
    """Tests for render_memory_text."""

    def test_no_summary(self):
        assert render_memory_text(None) == ""

    def test_full_summary_section_order(self):
        summary = _summary(
            _anchor_at(turn(3), turn_count=4),
            key_terms=[
                KeyTerm(term="torque", weight=2.0, occurrences=2, last_seen=T0),
                KeyTerm(term="lever", weight=1.0, occurrences=1, last_seen=T0),
            ],
            resolved_facts=["Torque is force times lever arm."],
            open_questions=["Why longer wrenches?"],
            student_needs=["Stuck on units."],
            timeline=CompactionTimeline(from_=T0, to=T0, highlights=["a", "b"]),
        )
        assert render_memory_text(summary).split("\n") == [
            MEMORY_HEADER,
            "Timeline highlights: a | b",
            "Key terms: torque, lever",
            "Resolved points: Torque is force times lever arm.",
            "Open questions: Why longer wrenches?",
            "Student needs: Stuck on units.",
            MEMORY_FOOTER,
        ]

    def test_empty_sections_omitted(self):
        summary = _summary(
            _anchor_at(turn(3)),
            timeline=CompactionTimeline(from_=T0, to=T0, highlights=["only this"]),
        )
        assert render_memory_text(summary).split("\n") == [
            MEMORY_HEADER,
            "Timeline highlights: only this",
            MEMORY_FOOTER,
        ]

    def test_every_highlight_rendered(self):
        result = build_compaction_result(conversation(40), None, "kinematics", now=NOW)
        text = render_memory_text(result.summary)
        for highlight in result.summary.timeline.highlights:
            assert highlight in text
        for key_term in result.summary.key_terms:
            assert key_term.term in text
