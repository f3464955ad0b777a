"""Tests for text measures and per-agency metric aggregation.

Covers churn between snapshots, titles without snapshots, chapters shared
by several agencies, chapter-less references, unreadable snapshots and
explicit date overrides.
"""

import asyncio

import pytest

from cfr_metrics.analysis.metrics import (
    MetricsEngine,
    checksum_hex,
    count_sentences,
    count_syllables,
    flesch_reading_ease,
    word_count,
)
from cfr_metrics.schemas.models import Agency, CFRReference, Title
from cfr_metrics.storage.database import Database
from cfr_metrics.storage.snapshots import SnapshotStore


def _xml(chapters: dict[str, str]) -> bytes:
    body = "".join(
        f'<DIV3 TYPE="CHAPTER" N="{label}"><P>{text}</P></DIV3>' for label, text in chapters.items()
    )
    return f"<ECFR><DIV1 TYPE=\"TITLE\">{body}</DIV1></ECFR>".encode("utf-8")


def _agency(slug: str, *refs: tuple) -> Agency:
    return Agency(
        slug=slug,
        name=slug.replace("-", " ").title(),
        cfr_references=[CFRReference(title=t, chapter=c) for t, c in refs],
    )


@pytest.fixture
def env(tmp_path):
    database = Database(tmp_path / "ecfr.sqlite")
    snapshots = SnapshotStore(database, tmp_path)
    engine = MetricsEngine(database, snapshots)
    yield database, snapshots, engine
    database.close()


def _metrics(database: Database, slug: str) -> dict:
    out = {}
    for metric in ("word_count", "words_per_chapter", "checksum", "readability", "churn"):
        rows = database.metric_history(slug, metric, 10)
        if rows:
            out[metric] = rows[0]
    return out


# ── Text measures ──


class TestTextMeasures:

    def test_word_count_letter_digit_runs(self):
        assert word_count("Alpha beta.") == 2
        assert word_count("§ 1.1(a)(2) applies") == 5
        assert word_count("") == 0

    def test_word_count_ignores_whitespace_and_punctuation(self):
        assert word_count("Alpha beta gamma") == word_count("  Alpha,\n\tbeta -- gamma!!  ")

    def test_checksum_is_deterministic_sha256(self):
        assert checksum_hex("x") == checksum_hex("x")
        assert checksum_hex("x") != checksum_hex("y")
        assert len(checksum_hex("x")) == 64
        assert checksum_hex("") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"

    def test_sentence_and_syllable_guards(self):
        assert count_sentences("no terminal punctuation") == 1
        assert count_sentences("One. Two! Three?") == 3
        assert count_syllables("rhythm") == 1
        assert count_syllables("") == 1
        assert count_syllables("Beautiful") == 3

    def test_flesch_formula(self):
        text = "The cat sat. The dog ran."
        words, sentences, syllables = 6, 2, 6
        expected = 206.835 - 1.015 * (words / sentences) - 84.6 * (syllables / words)
        assert flesch_reading_ease(text) == pytest.approx(expected)

    def test_flesch_empty_text_uses_guards(self):
        assert flesch_reading_ease("") == pytest.approx(206.835 - 1.015 - 84.6)


# ── Aggregation ──


class TestComputeLatest:

    def test_changed_chapter_churn_is_one(self, env):
        database, snapshots, engine = env
        snapshots.save_bytes(1, "2025-01-01", _xml({"I": "Alpha beta."}))
        snapshots.save_bytes(1, "2025-01-02", _xml({"I": "Alpha gamma."}))
        database.upsert_titles([Title(number=1, name="General", up_to_date_as_of="2025-01-02")])
        database.upsert_agencies([_agency("admin-committee", (1, "I"))])

        assert engine.compute_latest() == 1
        metrics = _metrics(database, "admin-committee")
        assert metrics["churn"] == {"date": "2025-01-02", "value": 1.0}
        assert metrics["word_count"]["value"] == 2.0
        assert metrics["checksum"]["value"] == checksum_hex("Alpha gamma.")

    def test_unchanged_chapter_churn_is_zero(self, env):
        database, snapshots, engine = env
        snapshots.save_bytes(1, "2025-01-01", _xml({"I": "Same text.", "II": "Old."}))
        snapshots.save_bytes(1, "2025-01-02", _xml({"I": "Same text.", "II": "New."}))
        database.upsert_titles([Title(number=1, name="General", up_to_date_as_of="2025-01-02")])
        database.upsert_agencies([
            _agency("stable", (1, "I")),
            _agency("half", (1, "I"), (1, "II")),
        ])
        engine.compute_latest()
        assert _metrics(database, "stable")["churn"]["value"] == 0.0
        assert _metrics(database, "half")["churn"]["value"] == 0.5

    def test_no_prior_snapshot_churn_is_zero(self, env):
        database, snapshots, engine = env
        snapshots.save_bytes(1, "2025-01-02", _xml({"I": "Alpha gamma."}))
        database.upsert_titles([Title(number=1, name="General", up_to_date_as_of="2025-01-02")])
        database.upsert_agencies([_agency("new-agency", (1, "I"))])
        engine.compute_latest()
        assert _metrics(database, "new-agency")["churn"]["value"] == 0.0

    def test_chapter_missing_from_prior_snapshot_not_compared(self, env):
        database, snapshots, engine = env
        snapshots.save_bytes(1, "2025-01-01", _xml({"II": "Other."}))
        snapshots.save_bytes(1, "2025-01-02", _xml({"I": "Added."}))
        database.upsert_titles([Title(number=1, name="General", up_to_date_as_of="2025-01-02")])
        database.upsert_agencies([_agency("a", (1, "I"))])
        engine.compute_latest()
        assert _metrics(database, "a")["churn"]["value"] == 0.0

    def test_missing_snapshot_writes_no_rows(self, env):
        database, snapshots, engine = env
        database.upsert_titles([Title(number=2, name="Grants", up_to_date_as_of="2025-01-02")])
        database.upsert_agencies([_agency("grants-office", (2, "III"))])
        assert engine.compute_latest() == 0
        assert _metrics(database, "grants-office") == {}
        assert database.latest_metric("word_count") == []

    def test_shared_chapter_identical_contributions(self, env):
        database, snapshots, engine = env
        snapshots.save_bytes(5, "2025-01-02", _xml({"I": "Shared rule text here."}))
        database.upsert_titles([Title(number=5, name="Admin", up_to_date_as_of="2025-01-02")])
        database.upsert_agencies([_agency("first", (5, "I")), _agency("second", (5, "I"))])
        engine.compute_latest()
        first, second = _metrics(database, "first"), _metrics(database, "second")
        assert first["word_count"] == second["word_count"]
        assert first["checksum"] == second["checksum"]
        assert first["word_count"]["value"] == 4.0

    def test_reference_without_chapter_is_not_attributed(self, env):
        database, snapshots, engine = env
        snapshots.save_bytes(1, "2025-01-02", _xml({"I": "Alpha."}))
        database.upsert_titles([Title(number=1, name="General", up_to_date_as_of="2025-01-02")])
        database.upsert_agencies([
            Agency(slug="vague", name="Vague", cfr_references=[CFRReference(title=1)]),
        ])
        assert engine.compute_latest() == 0
        assert _metrics(database, "vague") == {}

    def test_unknown_bucket_is_never_attributed(self, env):
        database, snapshots, engine = env
        snapshots.save_bytes(1, "2025-01-02", b"<ECFR><P>preamble only</P></ECFR>")
        database.upsert_titles([Title(number=1, name="General", up_to_date_as_of="2025-01-02")])
        database.upsert_agencies([_agency("unknown", (1, "UNKNOWN"))])
        assert engine.compute_latest() == 0
        assert _metrics(database, "unknown") == {}

    def test_words_per_chapter_and_issue_date(self, env):
        database, snapshots, engine = env
        snapshots.save_bytes(1, "2025-01-02", _xml({"I": "one two three", "II": "four five six"}))
        snapshots.save_bytes(2, "2025-02-10", _xml({"I": "seven eight"}))
        database.upsert_titles([
            Title(number=1, name="A", up_to_date_as_of="2025-01-02"),
            Title(number=2, name="B", up_to_date_as_of="2025-02-10"),
            Title(number=3, name="C", up_to_date_as_of="2025-03-01"),
        ])
        database.upsert_agencies([_agency("multi", (1, "I"), (1, "II"), (2, "I"), (3, "I"))])
        engine.compute_latest()
        metrics = _metrics(database, "multi")
        assert metrics["word_count"] == {"date": "2025-02-10", "value": 8.0}
        assert metrics["words_per_chapter"]["value"] == pytest.approx(8 / 3)

    def test_reserved_titles_skipped(self, env):
        database, snapshots, engine = env
        snapshots.save_bytes(35, "2025-01-02", _xml({"I": "ghost"}))
        database.upsert_titles([Title(number=35, name="Reserved", up_to_date_as_of="2025-01-02", reserved=True)])
        database.upsert_agencies([_agency("ghost", (35, "I"))])
        assert engine.compute_latest() == 0

    def test_unreadable_title_is_isolated(self, env):
        database, snapshots, engine = env
        snapshots.save_bytes(1, "2025-01-02", _xml({"I": "Good text."}))
        snapshots.save_bytes(2, "2025-01-02", _xml({"I": "Bad text."}))
        (snapshots.directory / "title-2_2025-01-02.xml.gz").write_bytes(b"corrupt")
        database.upsert_titles([
            Title(number=1, name="A", up_to_date_as_of="2025-01-02"),
            Title(number=2, name="B", up_to_date_as_of="2025-01-02"),
        ])
        database.upsert_agencies([_agency("good", (1, "I")), _agency("bad", (2, "I"))])
        assert engine.compute_latest() == 1
        assert "word_count" in _metrics(database, "good")
        assert _metrics(database, "bad") == {}

    def test_recompute_is_idempotent(self, env):
        database, snapshots, engine = env
        snapshots.save_bytes(1, "2025-01-02", _xml({"I": "Alpha beta."}))
        database.upsert_titles([Title(number=1, name="A", up_to_date_as_of="2025-01-02")])
        database.upsert_agencies([_agency("a", (1, "I"))])
        engine.compute_latest()
        engine.compute_latest()
        assert len(database.metric_history("a", "word_count", 10)) == 1


class TestComputeForDates:

    def test_override_builds_history(self, env):
        database, snapshots, engine = env
        snapshots.save_bytes(1, "2025-01-01", _xml({"I": "Alpha beta."}))
        snapshots.save_bytes(1, "2025-01-02", _xml({"I": "Alpha beta gamma."}))
        database.upsert_titles([Title(number=1, name="A", up_to_date_as_of="2025-01-02")])
        database.upsert_agencies([_agency("a", (1, "I"))])

        engine.compute_for_dates({1: "2025-01-01"})
        engine.compute_latest()

        history = database.metric_history("a", "word_count", 10)
        assert history == [
            {"date": "2025-01-02", "value": 3.0},
            {"date": "2025-01-01", "value": 2.0},
        ]


class TestComputeAsync:

    def test_async_path_matches_sync_path(self, tmp_path):
        results = []
        for run in ("sync", "async"):
            database = Database(tmp_path / f"{run}.sqlite")
            snapshots = SnapshotStore(database, tmp_path / run)
            engine = MetricsEngine(database, snapshots)
            snapshots.save_bytes(1, "2025-01-01", _xml({"I": "Alpha beta.", "II": "Same."}))
            snapshots.save_bytes(1, "2025-01-02", _xml({"I": "Alpha gamma.", "II": "Same."}))
            database.upsert_titles([Title(number=1, name="General", up_to_date_as_of="2025-01-02")])
            database.upsert_agencies([_agency("a", (1, "I"), (1, "II"))])
            if run == "sync":
                written = engine.compute_latest()
            else:
                written = asyncio.run(engine.compute_latest_async())
            results.append((written, _metrics(database, "a")))
            database.close()

        assert results[0] == results[1]
        assert results[1][1]["churn"]["value"] == 0.5

    def test_async_path_isolates_unreadable_title(self, env):
        database, snapshots, engine = env
        snapshots.save_bytes(1, "2025-01-02", _xml({"I": "Good text."}))
        snapshots.save_bytes(2, "2025-01-02", _xml({"I": "Bad text."}))
        (snapshots.directory / "title-2_2025-01-02.xml.gz").write_bytes(b"corrupt")
        database.upsert_titles([
            Title(number=1, name="A", up_to_date_as_of="2025-01-02"),
            Title(number=2, name="B", up_to_date_as_of="2025-01-02"),
            Title(number=3, name="C", up_to_date_as_of="2025-01-02"),
        ])
        database.upsert_agencies([_agency("good", (1, "I")), _agency("bad", (2, "I"))])
        assert asyncio.run(engine.compute_latest_async()) == 1
        assert _metrics(database, "bad") == {}
