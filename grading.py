"""Grading scheme engine.

A scheme is a record from ``grading_schemes``::

    {'id': 1, 'scheme_name': 'Standard',
     'rules': [{'min_score': 70, 'max_score': 100, 'grade_label': 'A',
                'remark': 'Excellent', 'gpa_value': 4.0}, ...],
     'overrides': {'Mathematics': [...bands...]}}

Bounds are inclusive on both ends. Adjacent bands share their boundary
(B is 60-70, A is 70-100) so fractional totals always land in a band; on
the shared edge the higher band wins.
"""

import logging
import math

from errors import InvalidGradingScheme, NoGradingScheme, NoMatchingBand, RecordNotFound

logger = logging.getLogger(__name__)

# A-F thresholds the school used before schemes were configurable.
DEFAULT_BANDS = [
    {'min_score': 70, 'max_score': 100, 'grade_label': 'A', 'remark': 'Excellent', 'gpa_value': 4.0},
    {'min_score': 60, 'max_score': 70, 'grade_label': 'B', 'remark': 'Very Good', 'gpa_value': 3.0},
    {'min_score': 50, 'max_score': 60, 'grade_label': 'C', 'remark': 'Good', 'gpa_value': 2.0},
    {'min_score': 40, 'max_score': 50, 'grade_label': 'D', 'remark': 'Pass', 'gpa_value': 1.0},
    {'min_score': 0, 'max_score': 40, 'grade_label': 'F', 'remark': 'Fail', 'gpa_value': 0.0},
]


def _band_bounds(band):
    return float(band['min_score']), float(band['max_score'])


def find_band(total, bands):
    """Return the band whose [min, max] contains total; the highest min wins."""
    best = None
    for band in bands or []:
        low, high = _band_bounds(band)
        if low <= total <= high and (best is None or low > float(best['min_score'])):
            best = band
    return best


def _grade_result(band):
    gpa = band.get('gpa_value')
    return {
        'grade_label': str(band['grade_label']),
        'remark': band.get('remark') or '',
        'gpa_value': float(gpa) if gpa is not None else None,
    }


def grade(total, scheme, subject_name=None):
    """Map ``total`` to ``{grade_label, remark, gpa_value}`` under ``scheme``.

    Subject override bands are tried first; the standard rules are the
    fallback. Raises NoMatchingBand when nothing covers the total.
    """
    total = float(total)
    overrides = scheme.get('overrides') or {}
    if subject_name and overrides.get(subject_name):
        band = find_band(total, overrides[subject_name])
        if band is not None:
            return _grade_result(band)
    band = find_band(total, scheme.get('rules'))
    if band is None:
        raise NoMatchingBand(total, scheme.get('scheme_name') or '')
    return _grade_result(band)


def validate_grading_scheme(bands, score_range=(0, 100)):
    """Return a list of problems with a band table (empty when usable).

    Checks each band is well formed and that consecutive bands meet
    exactly: the next band may start on this band's max but not above or
    below it. With ``score_range`` the bands must also reach both ends of
    that range.
    """
    errors = []
    if not bands:
        return ['Grading scheme has no bands.']
    parsed = []
    for index, band in enumerate(bands, 1):
        label = str((band or {}).get('grade_label') or '').strip()
        try:
            low, high = _band_bounds(band)
        except (KeyError, TypeError, ValueError):
            errors.append(f"Band {index} needs numeric min_score and max_score.")
            continue
        if not (math.isfinite(low) and math.isfinite(high)):
            errors.append(f"Band {index} has a non-finite bound.")
            continue
        if not label:
            errors.append(f"Band {index} is missing a grade label.")
        if low > high:
            errors.append(f"Band {label or index}: min_score {low:g} is above max_score {high:g}.")
            continue
        parsed.append((low, high, label or str(index)))
    if errors:
        return errors

    parsed.sort()
    for (low, high, label), (next_low, next_high, next_label) in zip(parsed, parsed[1:]):
        if next_low < high:
            errors.append(f"Bands {label} and {next_label} overlap between {next_low:g} and {high:g}.")
        elif next_low > high:
            errors.append(f"No band covers scores between {high:g} and {next_low:g}.")

    if score_range is not None:
        range_low, range_high = score_range
        if parsed[0][0] > range_low:
            errors.append(f"No band covers scores from {range_low:g} to {parsed[0][0]:g}.")
        top = max(high for _, high, _ in parsed)
        if top < range_high:
            errors.append(f"No band covers scores from {top:g} to {range_high:g}.")
    return errors


def check_grading_scheme(scheme, score_range=(0, 100)):
    """Raise InvalidGradingScheme unless the rules and every override table are usable."""
    errors = list(validate_grading_scheme(scheme.get('rules'), score_range))
    for subject_name, bands in sorted((scheme.get('overrides') or {}).items()):
        errors.extend(f"{subject_name}: {e}" for e in validate_grading_scheme(bands, None))
    if errors:
        raise InvalidGradingScheme(errors)


def resolve_grading_scheme(gateway, class_id):
    """Scheme assigned to the class, else the school default, else NoGradingScheme."""
    classes = gateway.select('academic_classes', {'id': class_id})
    if not classes:
        raise RecordNotFound('academic_classes', class_id)
    scheme_id = classes[0].get('grading_scheme_id')
    if scheme_id is None:
        config = gateway.select('school_config')
        scheme_id = config[0].get('active_grading_scheme_id') if config else None
    if scheme_id is None:
        raise NoGradingScheme(class_id)
    schemes = gateway.select('grading_schemes', {'id': scheme_id})
    if not schemes:
        logger.warning('Class %s points at missing grading scheme %s', class_id, scheme_id)
        raise NoGradingScheme(class_id)
    return schemes[0]
