"""
Academic Results Pipeline - web surface.

Flask routes over the score entry, workflow, aggregation, publication and
review modules. Login and user management belong to the school's auth
service, which puts ``user_id`` and ``permissions`` into the session.
"""

from flask import Flask, request, redirect, url_for, session, flash, Response
from flask_wtf.csrf import CSRFProtect, CSRFError
from flask_migrate import Migrate
import json
import os
import logging
from datetime import date, datetime
from decimal import Decimal

from dotenv import load_dotenv

from aggregation import recompute_class_term
from db import PostgresGateway
from errors import PipelineError, RecordNotFound
from forms import (
    AssignmentActionForm, ClassTermForm, OverrideForm, ScoreEntryForm, TermForm,
    component_scores_from_form, first_error,
)
from permissions import (
    LOCK_AND_PUBLISH, VIEW_ALL_SCORES, principal_from_session, require_permission,
)
from publication import publish_class, publish_term
from ranking import calculate_percentile, format_percentile, format_position
from review import override_score
from score_entries import save_score_entries
from workflow import (
    assignment_state, get_assignment, lock_assignment, lock_class, reset_assignment,
    submit_assignment,
)

load_dotenv()

app = Flask(__name__)
ALLOW_INSECURE_DEFAULTS = os.environ.get('ALLOW_INSECURE_DEFAULTS', '').strip().lower() in ('1', 'true', 'yes')
secret_key = os.environ.get('SECRET_KEY')
if not secret_key:
    if ALLOW_INSECURE_DEFAULTS:
        # Explicitly opt-in fallback for local/dev only.
        secret_key = 'dev-secret-key-change-me'
    else:
        raise RuntimeError("SECRET_KEY is required in production. Set SECRET_KEY or enable ALLOW_INSECURE_DEFAULTS for local development.")
if not ALLOW_INSECURE_DEFAULTS and len(secret_key) < 32:
    raise RuntimeError("SECRET_KEY is too short. Use at least 32 characters in production.")
app.secret_key = secret_key
app.config['WTF_CSRF_TIME_LIMIT'] = None

csrf = CSRFProtect(app)
# Raw SQL migrations; there is no SQLAlchemy model metadata.
migrate = Migrate(app, None, directory='migrations')

DATABASE_URL = os.environ.get('DATABASE_URL', '').strip()
if not DATABASE_URL.startswith(('postgres://', 'postgresql://')):
    raise RuntimeError("PostgreSQL is required. Set DATABASE_URL to a postgresql:// connection string.")
LOGIN_URL = os.environ.get('LOGIN_URL', '/login').strip() or '/login'

logging.basicConfig(filename=os.environ.get('LOG_FILE', 'app.log'),
                    level=getattr(logging, os.environ.get('LOG_LEVEL', 'INFO').upper(), logging.INFO),
                    format='%(asctime)s - %(levelname)s - %(message)s')
if ALLOW_INSECURE_DEFAULTS:
    logging.warning("ALLOW_INSECURE_DEFAULTS is enabled. Development-only fallbacks may be active.")

_gateway = None


def get_gateway():
    global _gateway
    if _gateway is None:
        _gateway = PostgresGateway(DATABASE_URL)
    return _gateway


def current_principal():
    """Principal for the logged-in caller, or None without a session."""
    if not session.get('user_id'):
        return None
    return principal_from_session(session)


def _json_default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return str(value)


def json_response(payload, status=200):
    return Response(json.dumps(payload, default=_json_default), status=status, mimetype='application/json')


def _back_to_results(class_id=None, term_id=None):
    if class_id and term_id:
        return redirect(url_for('results_summary', class_id=class_id, term_id=term_id))
    return redirect(url_for('results_summary'))


def _flash_aggregation(aggregation):
    if aggregation is not None and aggregation.errors:
        flash(f"{aggregation.summary()} Check the results log for details.", 'warning')


# ==================== ROUTES ====================

@app.errorhandler(CSRFError)
def csrf_error(error):
    """Handle CSRF token errors."""
    if 'user_id' in session:
        flash('Form token expired/invalid. Please retry your last action.', 'error')
        return redirect(request.referrer or url_for('results_summary'))
    flash('Your session has expired. Please login again.', 'error')
    return redirect(LOGIN_URL)


@app.route('/teacher/enter-scores', methods=['POST'])
def teacher_enter_scores():
    principal = current_principal()
    if principal is None:
        return redirect(LOGIN_URL)
    form = ScoreEntryForm()
    if not form.validate_on_submit():
        flash(first_error(form), 'error')
        return _back_to_results()
    class_id, term_id = form.class_id.data, form.term_id.data
    subject_name = form.subject_name.data.strip()
    rows = [{
        'student_id': form.student_id.data,
        'component_scores': component_scores_from_form(request.form),
    }]
    try:
        result = save_score_entries(get_gateway(), principal, class_id, subject_name, term_id, rows)
    except PipelineError as e:
        flash(str(e), 'error')
        return _back_to_results(class_id, term_id)
    entry = result.entries[0]
    if entry.get('ungraded_reason'):
        flash(f"Scores saved for student {entry['student_id']} but not graded: {entry['ungraded_reason']}", 'warning')
    else:
        flash(f"Scores saved for student {entry['student_id']} ({entry.get('grade_label')}).", 'success')
    _flash_aggregation(result.aggregation)
    return _back_to_results(class_id, term_id)


@app.route('/teacher/submit-scores', methods=['POST'])
def teacher_submit_scores():
    principal = current_principal()
    if principal is None:
        return redirect(LOGIN_URL)
    form = AssignmentActionForm()
    if not form.validate_on_submit():
        flash(first_error(form), 'error')
        return _back_to_results()
    try:
        assignment = submit_assignment(get_gateway(), principal, form.assignment_id.data)
    except PipelineError as e:
        flash(str(e), 'error')
        return _back_to_results()
    flash(f"{assignment['subject_name']} scores submitted for review.", 'success')
    return _back_to_results(assignment['class_id'], assignment['term_id'])


@app.route('/results/lock', methods=['POST'])
def results_lock():
    principal = current_principal()
    if principal is None:
        return redirect(LOGIN_URL)
    form = AssignmentActionForm()
    if not form.validate_on_submit():
        flash(first_error(form), 'error')
        return _back_to_results()
    try:
        result = lock_assignment(get_gateway(), principal, form.assignment_id.data)
    except PipelineError as e:
        flash(str(e), 'error')
        return _back_to_results()
    assignment = result.assignment
    flash(f"{assignment['subject_name']} scores locked.", 'success')
    if result.zero_scores:
        flash(f"{len(result.zero_scores)} student(s) have a zero or missing total in {assignment['subject_name']}.", 'warning')
    _flash_aggregation(result.aggregation)
    return _back_to_results(assignment['class_id'], assignment['term_id'])


@app.route('/results/reset', methods=['POST'])
def results_reset():
    principal = current_principal()
    if principal is None:
        return redirect(LOGIN_URL)
    form = AssignmentActionForm()
    if not form.validate_on_submit():
        flash(first_error(form), 'error')
        return _back_to_results()
    try:
        result = reset_assignment(get_gateway(), principal, form.assignment_id.data)
    except PipelineError as e:
        flash(str(e), 'error')
        return _back_to_results()
    assignment = result.assignment
    flash(f"{assignment['subject_name']} returned to the teacher for editing.", 'success')
    _flash_aggregation(result.aggregation)
    return _back_to_results(assignment['class_id'], assignment['term_id'])


@app.route('/results/lock-class', methods=['POST'])
def results_lock_class():
    principal = current_principal()
    if principal is None:
        return redirect(LOGIN_URL)
    form = ClassTermForm()
    if not form.validate_on_submit():
        flash(first_error(form), 'error')
        return _back_to_results()
    class_id, term_id = form.class_id.data, form.term_id.data
    try:
        result = lock_class(get_gateway(), principal, class_id, term_id)
    except PipelineError as e:
        flash(str(e), 'error')
        return _back_to_results(class_id, term_id)
    flash(result.summary(), 'success' if result.ok else 'warning')
    for item in result.failures():
        flash(f"{item.key}: {item.error}", 'error')
    _flash_aggregation(result.aggregation)
    return _back_to_results(class_id, term_id)


@app.route('/results/publish-class', methods=['POST'])
def results_publish_class():
    principal = current_principal()
    if principal is None:
        return redirect(LOGIN_URL)
    form = ClassTermForm()
    if not form.validate_on_submit():
        flash(first_error(form), 'error')
        return _back_to_results()
    class_id, term_id = form.class_id.data, form.term_id.data
    try:
        published = publish_class(get_gateway(), principal, class_id, term_id)
    except PipelineError as e:
        flash(str(e), 'error')
        return _back_to_results(class_id, term_id)
    flash(f"Published {len(published)} term report(s).", 'success')
    return _back_to_results(class_id, term_id)


@app.route('/results/publish-term', methods=['POST'])
def results_publish_term():
    principal = current_principal()
    if principal is None:
        return redirect(LOGIN_URL)
    form = TermForm()
    if not form.validate_on_submit():
        flash(first_error(form), 'error')
        return _back_to_results()
    try:
        published = publish_term(get_gateway(), principal, form.term_id.data)
    except PipelineError as e:
        flash(str(e), 'error')
        return _back_to_results()
    flash(f"Published {len(published)} term report(s) for term {form.term_id.data}.", 'success')
    return _back_to_results()


@app.route('/results/recompute', methods=['POST'])
def results_recompute():
    principal = current_principal()
    if principal is None:
        return redirect(LOGIN_URL)
    form = ClassTermForm()
    if not form.validate_on_submit():
        flash(first_error(form), 'error')
        return _back_to_results()
    class_id, term_id = form.class_id.data, form.term_id.data
    try:
        require_permission(principal, LOCK_AND_PUBLISH)
        result = recompute_class_term(get_gateway(), class_id, term_id)
    except PipelineError as e:
        flash(str(e), 'error')
        return _back_to_results(class_id, term_id)
    flash(result.summary(), 'success' if result.ok else 'warning')
    return _back_to_results(class_id, term_id)


@app.route('/scores/<int:score_id>/override', methods=['POST'])
def score_override(score_id):
    principal = current_principal()
    if principal is None:
        return redirect(LOGIN_URL)
    form = OverrideForm()
    if not form.validate_on_submit():
        flash(first_error(form), 'error')
        return _back_to_results()
    try:
        result = override_score(get_gateway(), principal, score_id, component_scores_from_form(request.form))
    except PipelineError as e:
        flash(str(e), 'error')
        return _back_to_results()
    entry = result.entry
    flash(f"Score {score_id} updated to {entry.get('total_score')} ({entry.get('grade_label') or 'ungraded'}).", 'success')
    _flash_aggregation(result.aggregation)
    return _back_to_results(entry['class_id'], entry['term_id'])


@app.route('/results')
def results_summary():
    """JSON list of a class's assignments for a term with their workflow state."""
    principal = current_principal()
    if principal is None:
        return redirect(LOGIN_URL)
    class_id = request.args.get('class_id', type=int)
    term_id = request.args.get('term_id', type=int)
    if not class_id or not term_id:
        return json_response({'error': 'class_id and term_id are required.'}, status=400)
    filters = {'class_id': class_id, 'term_id': term_id}
    if not (principal.can(VIEW_ALL_SCORES) or principal.can(LOCK_AND_PUBLISH)):
        filters['teacher_id'] = principal.user_id
    rows = get_gateway().select('teaching_assignments', filters, order_by=['subject_name'])
    assignments = [{
        'id': row['id'],
        'subject_name': row['subject_name'],
        'teacher_id': row.get('teacher_id'),
        'state': assignment_state(row),
        'submitted_at': row.get('submitted_at'),
    } for row in rows]
    return json_response({'class_id': class_id, 'term_id': term_id, 'assignments': assignments})


@app.route('/results/assignment/<int:assignment_id>')
def assignment_detail(assignment_id):
    principal = current_principal()
    if principal is None:
        return redirect(LOGIN_URL)
    try:
        assignment = get_assignment(get_gateway(), assignment_id)
    except RecordNotFound as e:
        return json_response({'error': str(e)}, status=404)
    can_view = principal.can(VIEW_ALL_SCORES) or principal.user_id == assignment.get('teacher_id')
    if not can_view:
        return json_response({'error': 'Not found.'}, status=404)
    entries = get_gateway().select('score_entries', {
        'class_id': assignment['class_id'],
        'subject_name': assignment['subject_name'],
        'term_id': assignment['term_id'],
    }, order_by=['student_id'])
    return json_response({
        'id': assignment['id'],
        'subject_name': assignment['subject_name'],
        'state': assignment_state(assignment),
        'entries': entries,
    })


@app.route('/results/report/<int:student_id>/<int:term_id>')
def term_report(student_id, term_id):
    """JSON term report with display strings; unpublished ones need view_all."""
    principal = current_principal()
    if principal is None:
        return redirect(LOGIN_URL)
    gateway = get_gateway()
    reports = gateway.select('student_term_reports', {'student_id': student_id, 'term_id': term_id})
    report = reports[0] if reports else None
    if report is None or (not report.get('is_published') and not principal.can(VIEW_ALL_SCORES)):
        return json_response({'error': 'Report not found.'}, status=404)
    entry_filters = {'student_id': student_id, 'term_id': term_id}
    if report.get('class_id') is not None:
        entry_filters['class_id'] = report['class_id']
    entries = gateway.select('score_entries', entry_filters, order_by=['subject_name'])
    payload = dict(report)
    payload['position_display'] = format_position(report.get('position_in_class'), report.get('class_size'))
    payload['percentile_display'] = format_percentile(report.get('percentile'))
    payload['subjects'] = [{
        'subject_name': e['subject_name'],
        'component_scores': e.get('component_scores') or {},
        'total_score': e.get('total_score'),
        'grade_label': e.get('grade_label'),
        'remark': e.get('remark'),
        'ungraded_reason': e.get('ungraded_reason'),
        'subject_position': e.get('subject_position'),
        'subject_class_size': e.get('subject_class_size'),
        'subject_position_display': format_position(e.get('subject_position'), e.get('subject_class_size')),
        'subject_percentile_display': format_percentile(
            calculate_percentile(e.get('subject_position'), e.get('subject_class_size'))),
    } for e in entries]
    return json_response(payload)


# ==================== MAIN ====================

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    debug = os.environ.get('FLASK_DEBUG', '0').strip().lower() in ('1', 'true', 'yes')
    app.run(host='0.0.0.0', port=port, debug=debug)
