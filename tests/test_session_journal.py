import os

from session_journal import LocalJournal


def test_journal_appends_and_reads_back(tmp_path):
    journal = LocalJournal(str(tmp_path / "spool"), "abc")
    journal.append("sample", {"timestamp": 1, "speed_kmh": 12.5})
    journal.append("crash", {"diff_ms": 700})
    journal.close()

    assert os.path.basename(journal.path) == "abc.ndjson"
    records = list(journal.iter_records())
    assert [r["kind"] for r in records] == ["sample", "crash"]
    assert records[0]["speed_kmh"] == 12.5
    assert records[1]["diff_ms"] == 700
    assert all("logged_at" in r for r in records)
    assert [r["diff_ms"] for r in journal.iter_records("crash")] == [700]
    assert journal.summary() == "crash=1, sample=1"


def test_append_after_close_is_ignored(tmp_path):
    journal = LocalJournal(str(tmp_path), "s1")
    journal.close()
    journal.close()
    assert journal.closed
    journal.append("sample", {"timestamp": 1})
    assert list(journal.iter_records()) == []
    assert journal.summary() == "empty"


def test_unserializable_record_is_not_raised(tmp_path):
    journal = LocalJournal(str(tmp_path), "s2")
    journal.append("dispatch", {"value": object()})
    journal.append("dispatch", {"value": 1})
    journal.close()
    assert [r["value"] for r in journal.iter_records()] == [1]
    assert journal.written["dispatch"] == 1


def test_corrupt_lines_are_skipped(tmp_path):
    journal = LocalJournal(str(tmp_path), "s3")
    journal.append("sample", {"timestamp": 1})
    journal.close()
    with open(journal.path, "a", encoding="utf-8") as fh:
        fh.write("{truncated\n")
    assert len(list(journal.iter_records())) == 1
