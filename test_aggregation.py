import pytest

from aggregation import (
    build_term_report, enrolled_student_ids, rank_subjects, recompute_class_term,
    recompute_student_term, student_average,
)


def seed_entry(gateway, student_id, subject_name, total, term_id=1, class_id=1):
    gateway.seed("score_entries", {
        "student_id": student_id,
        "class_id": class_id,
        "subject_name": subject_name,
        "term_id": term_id,
        "component_scores": {},
        "total_score": total,
    })


def report(gateway, student_id, term_id=1):
    return gateway.one("student_term_reports", student_id=student_id, term_id=term_id)


def test_student_average_excludes_missing_subjects():
    assert student_average([80, None, 60]) == 70
    assert student_average([]) is None
    assert student_average([None]) is None
    assert student_average([0, 0]) == 0


def test_build_term_report_derives_every_field():
    r = build_term_report(101, 1, 1, [80, 60, None], {101: 2}, 4)
    assert r["average_score"] == 70
    assert r["total_score"] == 140
    assert r["subjects_count"] == 2
    assert r["position_in_class"] == 2
    assert r["class_size"] == 4
    assert r["percentile"] == 75
    assert "is_published" not in r


def test_build_term_report_for_unranked_student():
    r = build_term_report(101, 1, 1, [], {}, 4)
    assert r["average_score"] is None
    assert r["position_in_class"] is None
    assert r["class_size"] is None
    assert r["percentile"] is None


def test_enrolled_student_ids(gateway):
    assert enrolled_student_ids(gateway, 1, 1) == [101, 102, 103]
    assert enrolled_student_ids(gateway, 1, 2) == [101]
    assert enrolled_student_ids(gateway, 9, 1) == []


def test_recompute_ranks_whole_class(gateway):
    seed_entry(gateway, 101, "Mathematics", 80)
    seed_entry(gateway, 101, "English", 60)
    seed_entry(gateway, 102, "Mathematics", 90)
    seed_entry(gateway, 103, "Mathematics", 70)
    seed_entry(gateway, 103, "English", None)

    result = recompute_class_term(gateway, 1, 1)
    assert result.ok
    assert result.class_size == 3
    assert report(gateway, 102)["position_in_class"] == 1
    assert report(gateway, 102)["percentile"] == 100
    assert report(gateway, 101)["average_score"] == 70
    assert report(gateway, 103)["average_score"] == 70
    assert report(gateway, 101)["position_in_class"] == 2
    assert report(gateway, 103)["position_in_class"] == 2
    assert report(gateway, 103)["subjects_count"] == 1
    assert report(gateway, 101)["percentile"] == pytest.approx(200 / 3)


def test_students_without_scores_are_not_ranked(gateway):
    seed_entry(gateway, 101, "Mathematics", 50)
    result = recompute_class_term(gateway, 1, 1)
    assert result.class_size == 1
    assert report(gateway, 101)["position_in_class"] == 1
    assert report(gateway, 102)["average_score"] is None
    assert report(gateway, 102)["position_in_class"] is None
    assert report(gateway, 102)["percentile"] is None


def test_recompute_keeps_publication_flag(gateway):
    seed_entry(gateway, 101, "Mathematics", 50)
    recompute_class_term(gateway, 1, 1)
    gateway.update("student_term_reports", {"is_published": True}, {"student_id": 101})
    seed_entry(gateway, 101, "English", 70)
    recompute_class_term(gateway, 1, 1)
    assert report(gateway, 101)["is_published"] is True
    assert report(gateway, 101)["average_score"] == 60


def test_recompute_is_order_independent(gateway):
    seed_entry(gateway, 101, "Mathematics", 62.5)
    seed_entry(gateway, 102, "Mathematics", 62.5)
    seed_entry(gateway, 103, "Mathematics", 40)
    first = {r["student_id"]: r["position_in_class"] for r in recompute_class_term(gateway, 1, 1).reports}
    gateway.tables["score_entries"].reverse()
    second = {r["student_id"]: r["position_in_class"] for r in recompute_class_term(gateway, 1, 1).reports}
    assert first == second == {101: 1, 102: 1, 103: 3}


def test_one_student_failure_does_not_abort_class(gateway):
    seed_entry(gateway, 101, "Mathematics", 80)
    seed_entry(gateway, 102, "Mathematics", 70)
    seed_entry(gateway, 103, "Mathematics", 60)
    gateway.fail_when(
        "upsert", "student_term_reports",
        lambda record: record.get("student_id") == 102,
        RuntimeError("write timeout"),
    )
    result = recompute_class_term(gateway, 1, 1)
    assert result.errors == {102: "write timeout"}
    assert not result.ok
    assert {r["student_id"] for r in result.reports} == {101, 103}
    assert report(gateway, 103)["position_in_class"] == 3
    assert "1 student(s) failed" in result.summary()


def test_scores_for_unenrolled_student_are_reported(gateway):
    seed_entry(gateway, 101, "Mathematics", 80)
    seed_entry(gateway, 555, "Mathematics", 99)
    result = recompute_class_term(gateway, 1, 1)
    assert 555 in result.errors
    assert report(gateway, 101)["position_in_class"] == 1
    assert gateway.select("student_term_reports", {"student_id": 555}) == []


def test_malformed_total_is_a_per_student_error(gateway):
    seed_entry(gateway, 101, "Mathematics", 80)
    seed_entry(gateway, 102, "Mathematics", "not a number")
    result = recompute_class_term(gateway, 1, 1)
    assert 102 in result.errors
    assert result.class_size == 1
    assert report(gateway, 103)["position_in_class"] is None


def test_malformed_term_id_is_rejected(gateway):
    with pytest.raises(ValueError):
        recompute_class_term(gateway, 1, "first-term")
    assert recompute_class_term(gateway, 1, "1").term_id == 1


def test_recompute_runs_in_class_term_critical_section(gateway):
    recompute_class_term(gateway, 1, 1)
    assert gateway.sections == ["aggregate:1:1"]


def test_recompute_student_term_covers_students_class(gateway):
    seed_entry(gateway, 101, "Mathematics", 80, term_id=2)
    results = recompute_student_term(gateway, 101, 2)
    assert len(results) == 1
    assert results[0].class_id == 1
    assert report(gateway, 101, term_id=2)["position_in_class"] == 1


def test_recompute_student_term_for_unenrolled_student(gateway):
    results = recompute_student_term(gateway, 999, 1)
    assert 999 in results[0].errors


def test_failing_student_does_not_keep_previous_rank(gateway):
    seed_entry(gateway, 101, "Mathematics", 80)
    seed_entry(gateway, 102, "Mathematics", 70)
    seed_entry(gateway, 103, "Mathematics", 60)
    recompute_class_term(gateway, 1, 1)
    assert report(gateway, 102)["position_in_class"] == 2

    gateway.update("score_entries", {"total_score": "garbage"}, {"student_id": 102})
    result = recompute_class_term(gateway, 1, 1)
    assert 102 in result.errors
    stale = report(gateway, 102)
    assert stale["average_score"] is None
    assert stale["position_in_class"] is None
    assert stale["class_size"] is None
    assert stale["percentile"] is None
    assert report(gateway, 103)["position_in_class"] == 2
    assert report(gateway, 103)["class_size"] == 2


def test_rank_subjects_ranks_each_subject_separately():
    ranks = rank_subjects({
        "Mathematics": {101: 80, 102: 90, 103: 80},
        "English": {101: 60},
    })
    assert ranks == {
        (102, "Mathematics"): (1, 3),
        (101, "Mathematics"): (2, 3),
        (103, "Mathematics"): (2, 3),
        (101, "English"): (1, 1),
    }


def test_recompute_stores_subject_position_on_entries(gateway):
    seed_entry(gateway, 101, "Mathematics", 80)
    seed_entry(gateway, 101, "English", 60)
    seed_entry(gateway, 102, "Mathematics", 90)
    seed_entry(gateway, 103, "Mathematics", 80)
    seed_entry(gateway, 103, "English", 75)
    seed_entry(gateway, 102, "English", None)
    recompute_class_term(gateway, 1, 1)

    def subject_rank(student_id, subject_name):
        entry = gateway.one("score_entries", student_id=student_id, subject_name=subject_name)
        return entry["subject_position"], entry["subject_class_size"]

    assert subject_rank(102, "Mathematics") == (1, 3)
    assert subject_rank(101, "Mathematics") == (2, 3)
    assert subject_rank(103, "Mathematics") == (2, 3)
    assert subject_rank(103, "English") == (1, 2)
    assert subject_rank(101, "English") == (2, 2)
    assert subject_rank(102, "English") == (None, None)


def test_subject_position_is_cleared_when_student_fails(gateway):
    seed_entry(gateway, 101, "Mathematics", 80)
    seed_entry(gateway, 102, "Mathematics", 70)
    seed_entry(gateway, 102, "English", 65)
    recompute_class_term(gateway, 1, 1)
    assert gateway.one("score_entries", student_id=102, subject_name="English")["subject_position"] == 1

    gateway.update("score_entries", {"total_score": float("inf")}, {"student_id": 102, "subject_name": "Mathematics"})
    recompute_class_term(gateway, 1, 1)
    english = gateway.one("score_entries", student_id=102, subject_name="English")
    assert english["subject_position"] is None
    assert english["subject_class_size"] is None
    assert gateway.one("score_entries", student_id=101, subject_name="Mathematics")["subject_class_size"] == 1
