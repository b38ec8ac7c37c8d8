"""Aggregation engine: per-student term reports with class position and percentile.

A recomputation always covers a whole class and term at once because one
student's change can move everybody else's position.
"""

import logging
import math
from collections import defaultdict
from datetime import datetime

from ranking import calculate_percentile, rank_by_average

logger = logging.getLogger(__name__)

REPORT_KEY = ('student_id', 'term_id')


class AggregationResult:
    """Reports written by one class recomputation plus per-student failures."""

    def __init__(self, class_id, term_id, reports=None, errors=None, class_size=0):
        self.class_id = class_id
        self.term_id = term_id
        self.reports = reports or []
        self.errors = errors or {}
        self.class_size = class_size

    @property
    def ok(self):
        return not self.errors

    def report_for(self, student_id):
        for report in self.reports:
            if report.get('student_id') == student_id:
                return report
        return None

    def summary(self):
        text = f"Recomputed {len(self.reports)} report(s) for class {self.class_id}, term {self.term_id}"
        if self.errors:
            text += f"; {len(self.errors)} student(s) failed"
        return text + '.'

    def __repr__(self):
        return f"<AggregationResult class={self.class_id} term={self.term_id} reports={len(self.reports)} errors={len(self.errors)}>"


def enrolled_student_ids(gateway, class_id, term_id):
    """Students currently enrolled in the class for the term."""
    rows = gateway.select('academic_class_students', {'class_id': class_id, 'term_id': term_id})
    return sorted({row['student_id'] for row in rows}, key=str)


def student_average(subject_totals):
    """Mean of the subject totals that exist; None when there are none."""
    present = [float(t) for t in subject_totals or [] if t is not None]
    if not present:
        return None
    return math.fsum(present) / len(present)


def build_term_report(student_id, term_id, class_id, subject_totals, positions, class_size):
    """Produce a report record; the only place its derived fields are set."""
    present = [float(t) for t in subject_totals or [] if t is not None]
    position = positions.get(student_id)
    size = class_size if position is not None else None
    return {
        'student_id': student_id,
        'term_id': term_id,
        'class_id': class_id,
        'average_score': student_average(present),
        'total_score': math.fsum(present) if present else None,
        'subjects_count': len(present),
        'position_in_class': position,
        'class_size': size,
        'percentile': calculate_percentile(position, size),
        'computed_at': datetime.now(),
    }


def _normalize_term_id(term_id):
    if isinstance(term_id, bool):
        raise ValueError(f"Invalid term id: {term_id!r}")
    try:
        return int(str(term_id).strip())
    except (TypeError, ValueError):
        raise ValueError(f"Invalid term id: {term_id!r}")


def rank_subjects(totals_by_subject):
    """Competition ranking within each subject.

    ``totals_by_subject`` is ``{subject_name: {student_id: total}}``; the
    result maps ``(student_id, subject_name)`` to ``(position, size)``.
    """
    ranks = {}
    for subject_name, totals in totals_by_subject.items():
        positions = rank_by_average(totals)
        for sid, position in positions.items():
            ranks[(sid, subject_name)] = (position, len(positions))
    return ranks


def _save_subject_ranks(gateway, entries, ranks, errors):
    for entry in entries:
        sid = entry.get('student_id')
        position, size = ranks.get((sid, entry.get('subject_name')), (None, None))
        if entry.get('subject_position') == position and entry.get('subject_class_size') == size:
            continue
        try:
            gateway.update('score_entries', {'subject_position': position, 'subject_class_size': size},
                           {'id': entry['id']})
        except Exception as e:
            logger.exception('Failed to save subject position for student %s, %s', sid, entry.get('subject_name'))
            errors.setdefault(sid, str(e))


def recompute_class_term(gateway, class_id, term_id):
    """Re-derive every enrolled student's report for ``class_id`` and ``term_id``.

    Runs inside the gateway's critical section for the class and term so
    two concurrent recomputations serialize and the later one sees both
    writes. A failure for one student is recorded and the rest continue;
    that student's report is rewritten without a rank rather than left
    holding the previous run's numbers. Each score entry also gets its
    position within the subject.
    """
    term_id = _normalize_term_id(term_id)
    with gateway.critical_section(f"aggregate:{class_id}:{term_id}"):
        student_ids = enrolled_student_ids(gateway, class_id, term_id)
        enrolled = set(student_ids)
        entries = gateway.select('score_entries', {'class_id': class_id, 'term_id': term_id})

        errors = {}
        totals = defaultdict(list)
        by_subject = defaultdict(dict)
        for entry in entries:
            sid = entry.get('student_id')
            if sid not in enrolled:
                errors[sid] = f"Student {sid} has scores but is not enrolled in class {class_id} for term {term_id}."
                logger.warning(errors[sid])
                continue
            total = entry.get('total_score')
            if total is None:
                continue
            try:
                value = float(total)
            except (TypeError, ValueError):
                value = float('nan')
            if not math.isfinite(value):
                errors[sid] = f"Invalid total {total!r} for {entry.get('subject_name')}."
                logger.warning('Skipping student %s in class %s: %s', sid, class_id, errors[sid])
                continue
            totals[sid].append(value)
            by_subject[entry.get('subject_name')][sid] = value

        ranked_ids = [sid for sid in student_ids if sid not in errors]
        averages = {sid: student_average(totals.get(sid)) for sid in ranked_ids}
        positions = rank_by_average(averages)
        class_size = len(positions)

        reports = []
        for sid in ranked_ids:
            report = build_term_report(sid, term_id, class_id, totals.get(sid), positions, class_size)
            try:
                saved = gateway.upsert('student_term_reports', report, REPORT_KEY)
            except Exception as e:
                logger.exception('Failed to save term report for student %s, term %s', sid, term_id)
                errors[sid] = str(e)
                continue
            reports.append(saved or report)

        for sid in student_ids:
            if sid in errors and sid not in positions:
                cleared = build_term_report(sid, term_id, class_id, None, {}, class_size)
                try:
                    gateway.upsert('student_term_reports', cleared, REPORT_KEY)
                except Exception:
                    logger.exception('Failed to clear term report for student %s, term %s', sid, term_id)

        ranked = set(ranked_ids)
        subject_ranks = rank_subjects({
            subject_name: {sid: value for sid, value in subject_totals.items() if sid in ranked}
            for subject_name, subject_totals in by_subject.items()
        })
        _save_subject_ranks(gateway, [e for e in entries if e.get('student_id') in enrolled], subject_ranks, errors)

    result = AggregationResult(class_id, term_id, reports, errors, class_size)
    logger.info(result.summary())
    return result


def recompute_student_term(gateway, student_id, term_id):
    """Recompute every class the student is enrolled in for the term."""
    term_id = _normalize_term_id(term_id)
    rows = gateway.select('academic_class_students', {'student_id': student_id, 'term_id': term_id})
    class_ids = sorted({row['class_id'] for row in rows}, key=str)
    if not class_ids:
        logger.warning('Student %s is not enrolled in any class for term %s', student_id, term_id)
        return [AggregationResult(None, term_id, errors={
            student_id: f"Student {student_id} is not enrolled in any class for term {term_id}."
        })]
    return [recompute_class_term(gateway, class_id, term_id) for class_id in class_ids]
