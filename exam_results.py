"""
Examination Results Upload Service

Flask application exposing the two-phase comprehensive results upload:
a read-only preview that reconciles a results sheet against existing
regions, clusters, schools and students, and a one-shot confirm that
applies it.
"""

from flask import Flask, request, session, jsonify, Response
from flask_migrate import Migrate
from flask_wtf import FlaskForm
from flask_wtf.csrf import CSRFProtect, CSRFError
from flask_wtf.file import FileField, FileRequired, FileAllowed
from wtforms import IntegerField, SelectField, StringField, validators

import os
import logging
from dotenv import load_dotenv

from apply_engine import LocationHints, apply_session, has_applicable_rows
from csv_exports import build_error_export, build_template
from entity_resolver import CreationPolicy
from reconciliation import analyze_upload
from reconciliation_sessions import SessionError, build_session_store
from reference_repository import PostgresReferenceRepository
from school_logins import SchoolLoginProvisioner
from upload_errors import ParseError

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
app.config['MAX_CONTENT_LENGTH'] = int(os.environ.get('MAX_UPLOAD_MB', '10')) * 1024 * 1024

# Initialize CSRF Protection
csrf = CSRFProtect(app)
migrate = Migrate(app, directory='migrations')

DATABASE_URL = os.environ.get('DATABASE_URL', '').strip()
if not DATABASE_URL.startswith(('postgres://', 'postgresql://')):
    raise RuntimeError("PostgreSQL is required. Set DATABASE_URL to a postgresql:// connection string.")

VALID_GRADES = tuple(
    int(value) for value in os.environ.get('VALID_GRADES', '3,6,9,12').split(',') if value.strip()
)
UPLOAD_ROLES = {'super_admin', 'system_admin'}

# Set up logging
logging.basicConfig(filename=os.environ.get('LOG_FILE', 'app.log'), level=logging.INFO,
                    format='%(asctime)s - %(levelname)s - %(message)s')
if ALLOW_INSECURE_DEFAULTS:
    logging.warning("ALLOW_INSECURE_DEFAULTS is enabled. Development-only fallbacks may be active.")

REPOSITORY = PostgresReferenceRepository()
SESSION_STORE = build_session_store()
PROVISIONER = SchoolLoginProvisioner(REPOSITORY)
CREATION_POLICY = CreationPolicy.from_env()


class PreviewForm(FlaskForm):
    file = FileField('Results file', validators=[
        FileRequired('Choose a CSV file to upload.'),
        FileAllowed(['csv'], 'Only .csv files are accepted.'),
    ])
    exam_year_id = IntegerField('Exam year', validators=[validators.InputRequired(), validators.NumberRange(min=1)])
    grade = SelectField('Grade', coerce=int, choices=[(grade, str(grade)) for grade in VALID_GRADES],
                        validators=[validators.InputRequired()])


class ConfirmForm(FlaskForm):
    token = StringField('Upload token', validators=[validators.DataRequired(), validators.Length(max=128)])
    default_region_id = IntegerField('Default region', validators=[validators.Optional(), validators.NumberRange(min=1)])
    default_cluster_id = IntegerField('Default location', validators=[validators.Optional(), validators.NumberRange(min=1)])


def json_error(status, error, message, **extra):
    payload = {'success': False, 'error': error, 'message': message}
    payload.update(extra)
    return jsonify(payload), status


def upload_role_required():
    """Return an error response unless the session may run results uploads."""
    if session.get('role') not in UPLOAD_ROLES:
        return json_error(403, 'forbidden', 'Only system administrators can upload results.')
    return None


def form_error(form):
    messages = [f'{name}: {"; ".join(errors)}' for name, errors in form.errors.items()]
    return json_error(400, 'invalid_request', ' | '.join(messages) or 'Invalid request.', fields=form.errors)


def csv_response(filename, content):
    return Response(
        content,
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename={filename}'}
    )


# ==================== ROUTES ====================

@app.errorhandler(CSRFError)
def csrf_error(error):
    """Handle CSRF token errors."""
    return json_error(400, 'csrf_failed', 'Form token expired/invalid. Reload the page and retry.')


@app.errorhandler(SessionError)
def upload_session_error(error):
    logging.info("Results upload session %s rejected: %s", error.token[:8], error.error_code)
    return jsonify(error.to_dict()), error.http_status


@app.route('/results/comprehensive-upload/preview', methods=['POST'])
def comprehensive_upload_preview():
    denied = upload_role_required()
    if denied:
        return denied
    form = PreviewForm()
    if not form.validate_on_submit():
        return form_error(form)

    exam_year_id = form.exam_year_id.data
    if not REPOSITORY.get_exam_year(exam_year_id):
        return json_error(400, 'invalid_request', f'Exam year {exam_year_id} does not exist.')

    upload = form.file.data
    try:
        analysis = analyze_upload(
            upload.read(),
            grade=form.grade.data,
            exam_year_id=exam_year_id,
            repository=REPOSITORY,
            policy=CREATION_POLICY,
            filename=upload.filename or '',
        )
    except ParseError as e:
        logging.info("Results upload rejected by %s: %s", session.get('user_id'), e)
        return json_error(400, 'parse_error', str(e))

    token = SESSION_STORE.create(analysis)
    summary = analysis.summary()
    logging.info(
        "Results upload previewed by %s: %s rows, %s resolved",
        session.get('user_id'), summary['total_rows'], summary['resolved_rows'],
    )
    return jsonify({
        'success': True,
        'token': token,
        'summary': summary,
        'can_confirm': summary['can_confirm'],
        'subject_columns': [column.to_dict() for column in analysis.subject_columns],
        'ignored_columns': analysis.ignored_columns,
        'structural_errors': analysis.structural_errors,
    })


@app.route('/results/comprehensive-upload/template')
def comprehensive_upload_template():
    """Download the results sheet template for one grade."""
    denied = upload_role_required()
    if denied:
        return denied
    grade = request.args.get('grade', type=int)
    if grade not in VALID_GRADES:
        return json_error(400, 'invalid_request', f'Grade must be one of {", ".join(map(str, VALID_GRADES))}.')
    filename, content = build_template(grade, REPOSITORY.load_subjects(grade))
    return csv_response(filename, content)


@app.route('/results/comprehensive-upload/confirm', methods=['POST'])
def comprehensive_upload_confirm():
    denied = upload_role_required()
    if denied:
        return denied
    form = ConfirmForm()
    if not form.validate_on_submit():
        return form_error(form)

    hints = LocationHints(
        default_region_id=form.default_region_id.data,
        default_cluster_id=form.default_cluster_id.data,
    )
    token = form.token.data.strip()
    if not has_applicable_rows(SESSION_STORE.get(token), hints):
        return json_error(
            400, 'nothing_to_apply',
            'No row of this upload can be applied. Fix the sheet and upload it again, '
            'or give a default region or location for rows with blank location cells.',
        )
    summary = apply_session(token, SESSION_STORE, REPOSITORY, provisioner=PROVISIONER, hints=hints)
    logging.info(
        "Results upload confirmed by %s: %s rows applied, %s row errors",
        session.get('user_id'), summary['rows_applied'], len(summary['row_errors']),
    )
    return jsonify({'success': True, 'summary': summary})


@app.route('/results/comprehensive-upload/<token>')
def comprehensive_upload_summary(token):
    denied = upload_role_required()
    if denied:
        return denied
    analysis = SESSION_STORE.get(token)
    return jsonify({'success': True, 'token': token, 'summary': analysis.summary()})


@app.route('/results/comprehensive-upload/<token>/export/<any(unmatched, unmatchedstudents, nomarks, invalid):kind>')
def comprehensive_upload_export(token, kind):
    """Download the rows of one classification from an upload session."""
    denied = upload_role_required()
    if denied:
        return denied
    analysis = SESSION_STORE.get(token)
    filename, content = build_error_export(analysis, kind)
    return csv_response(filename, content)


if __name__ == '__main__':
    app.run(debug=os.environ.get('FLASK_DEBUG', '').strip().lower() in ('1', 'true', 'yes'))
