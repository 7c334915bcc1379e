import os
import json
import logging
import datetime as dt

import click
from flask import Flask, request, jsonify, abort, send_file, send_from_directory, Response
from flask_cors import CORS
from sqlalchemy import or_
from werkzeug.exceptions import HTTPException

from models import db, AssetType, Asset, Activity, History
from utils import (request_data, current_author, generate_asset_code, is_fallback_code,
                   qr_path, generate_qr, save_photo, save_document, delete_upload,
                   read_import_rows, log_action, SequenceUpdateError, ImportFormatError,
                   UploadError, REQUIRED_IMPORT_HEADERS)
from followups import (migrate_follow_ups, activity_entries, add_follow_up,
                       reset_follow_ups, entries_for_display)


app = Flask(__name__)
app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///maintenance.db')
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['UPLOAD_FOLDER'] = os.path.abspath(
    os.environ.get('UPLOAD_FOLDER', os.path.join('static', 'uploads')))
app.config['QR_FOLDER'] = os.path.abspath(
    os.environ.get('QR_FOLDER', os.path.join('static', 'qr')))
app.config['MAX_CONTENT_LENGTH'] = int(os.environ.get('MAX_CONTENT_LENGTH', 50 * 1024 * 1024))
app.config['IMAGE_MAX_SIDE'] = int(os.environ.get('IMAGE_MAX_SIDE', 1200))
app.config['IMAGE_QUALITY'] = int(os.environ.get('IMAGE_QUALITY', 80))
os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)
os.makedirs(app.config['QR_FOLDER'], exist_ok=True)
app.secret_key = os.environ.get('SECRET_KEY', 'maintenance-secret')
db.init_app(app)

logging.basicConfig(level=os.environ.get('LOG_LEVEL', 'INFO'),
                    format='%(asctime)s - %(levelname)s - %(name)s - %(message)s')
logger = logging.getLogger(__name__)

ASSET_DEFAULTS = {
    'site': 'Sin Sede',
    'location': 'Sin Ubicación',
    'status': 'Inactivo',
    'manager': 'Por asignar',
    'maintenance_frequency': 'N/A',
}
REQUIRED_ACTIVITY_FIELDS = ('site', 'activity', 'start_date', 'end_date',
                            'price', 'responsible', 'status')
ACTIVITY_TEXT_FIELDS = ('site', 'activity', 'status', 'responsible', 'assignee',
                        'employee_name', 'employee_id', 'employee_role',
                        'requester_name')
PHOTO_FIELDS = {'before': 'photo_before', 'after': 'photo_after'}


def setup_database():
    db.create_all()


with app.app_context():
    setup_database()


cors_origins = os.environ.get('CORS_ORIGINS', '*')
CORS(app,
     resources={r'/*': {'origins': [o.strip() for o in cors_origins.split(',') if o.strip()]}},
     methods=['GET', 'POST', 'PUT', 'DELETE', 'OPTIONS'],
     allow_headers=['Origin', 'X-Requested-With', 'Content-Type', 'Accept',
                    'Authorization', 'X-User-Email'],
     expose_headers=['Content-Disposition'])


@app.errorhandler(HTTPException)
def http_error(e):
    return jsonify(error=e.description), e.code


@app.errorhandler(UploadError)
@app.errorhandler(ImportFormatError)
def bad_upload(e):
    db.session.rollback()
    return jsonify(error=str(e)), 400


@app.errorhandler(SequenceUpdateError)
def sequence_failed(e):
    db.session.rollback()
    return jsonify(error=f'The asset could not be registered: {e}'), 500


def _text(data, key):
    value = data.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _parse_date(value, field):
    try:
        return dt.date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        abort(400, description=f'{field} must be a date in YYYY-MM-DD format')


def _parse_price(value):
    try:
        return float(str(value).strip())
    except ValueError:
        abort(400, description='price must be a number')


def _parse_int(value, field):
    try:
        return int(value)
    except (TypeError, ValueError):
        abort(400, description=f'{field} must be an integer')


def _require_type(type_name):
    if not type_name or not AssetType.query.filter_by(name=type_name).first():
        abort(400, description=f"Asset type '{type_name}' is not valid or does not exist")


def _with_defaults(values):
    for key, default in ASSET_DEFAULTS.items():
        if not values.get(key):
            values[key] = default
    return values


@app.route('/')
def index():
    return jsonify(status='ok')


@app.route('/uploads/<path:filename>')
def uploaded_file(filename):
    return send_from_directory(app.config['UPLOAD_FOLDER'], filename)


@app.route('/api/inventory/asset-types', methods=['GET', 'POST'])
def asset_types():
    if request.method == 'POST':
        data = request_data()
        code = (_text(data, 'code') or '').upper()
        name = _text(data, 'name')
        if not code or not name:
            abort(400, description='Type code and name are required')
        if AssetType.query.filter(or_(AssetType.code == code, AssetType.name == name)).first():
            return jsonify(error=f'Asset type {code} / {name} already exists'), 409
        last_sequence = _parse_int(data.get('last_sequence') or 0, 'last_sequence')
        if last_sequence < 0:
            abort(400, description='last_sequence cannot be negative')
        asset_type = AssetType(code=code, name=name,
                               description=_text(data, 'description'),
                               last_sequence=last_sequence)
        db.session.add(asset_type)
        db.session.commit()
        log_action('created asset type', description=f'Asset type {code} ({name}) was created')
        return jsonify(asset_type.to_dict()), 201
    types = AssetType.query.order_by(AssetType.name).all()
    return jsonify([t.to_dict() for t in types])


@app.route('/api/inventory', methods=['POST'])
def register_asset():
    data = request_data()
    name = _text(data, 'name')
    type_name = _text(data, 'type_name')
    if not name:
        abort(400, description='Asset name is required')
    _require_type(type_name)

    photo = save_photo(request.files.get('photo'), 'inventory/photos') or _text(data, 'photo_url')
    risk_document = (save_document(request.files.get('risk_document'), 'inventory/docs')
                     or _text(data, 'risk_document_url'))
    values = {col: _text(data, col) for col in Asset.EDITABLE if col in data}
    values.update(name=name, type_name=type_name)
    try:
        code = generate_asset_code(type_name, name)
    except SequenceUpdateError:
        delete_upload(photo)
        delete_upload(risk_document)
        raise
    asset = Asset(code=code, photo=photo, risk_document=risk_document,
                  **_with_defaults(values))
    db.session.add(asset)
    db.session.commit()
    generate_qr(code)
    log_action('registered asset', asset=asset)
    sequential = not is_fallback_code(code)
    if not sequential:
        log_action('fallback asset code', asset=asset)
    return jsonify(message='Asset registered', id=asset.id, code=code,
                   sequential=sequential), 201


@app.route('/api/inventory')
def list_assets():
    query = Asset.query
    code = request.args.get('code')
    if code:
        query = query.filter_by(code=code.strip())
    for arg, column in (('site', Asset.site), ('status', Asset.status),
                        ('type', Asset.type_name)):
        if request.args.get(arg):
            query = query.filter(column == request.args[arg])
    search = request.args.get('q')
    if search:
        query = query.filter(or_(Asset.name.contains(search),
                                 Asset.code.contains(search),
                                 Asset.serial.contains(search),
                                 Asset.brand.contains(search)))
    assets = query.order_by(Asset.created_at.desc(), Asset.id.desc()).all()
    return jsonify([a.to_dict() for a in assets])


@app.route('/api/inventory/<int:asset_id>', methods=['PUT'])
def update_asset(asset_id):
    asset = db.get_or_404(Asset, asset_id)
    data = request_data()
    if 'name' in data and not _text(data, 'name'):
        abort(400, description='Asset name cannot be empty')
    if 'type_name' in data:
        _require_type(_text(data, 'type_name'))
    for col in Asset.EDITABLE:
        if col in data:
            setattr(asset, col, _text(data, col))

    photo = save_photo(request.files.get('photo'), 'inventory/photos') or _text(data, 'photo_url')
    if photo:
        if photo != asset.photo:
            delete_upload(asset.photo)
        asset.photo = photo
    document = (save_document(request.files.get('risk_document'), 'inventory/docs')
                or _text(data, 'risk_document_url'))
    if document:
        if document != asset.risk_document:
            delete_upload(asset.risk_document)
        asset.risk_document = document
    db.session.commit()
    log_action('edited asset', asset=asset)
    return jsonify(message='Asset updated', asset=asset.to_dict())


@app.route('/api/inventory/<int:asset_id>', methods=['DELETE'])
def delete_asset(asset_id):
    asset = db.get_or_404(Asset, asset_id)
    log_action('deleted asset', asset=asset)
    db.session.delete(asset)
    db.session.commit()
    return jsonify(message='Asset deleted')


@app.route('/api/inventory/<code>/qr')
def asset_qr(code):
    asset = Asset.query.filter_by(code=code).first_or_404()
    path = qr_path(asset.code)
    if not os.path.exists(path):
        generate_qr(asset.code)
    return send_file(path, mimetype='image/png')


@app.route('/api/inventory/<code>/datasheets', methods=['POST', 'DELETE'])
def asset_datasheets(code):
    asset = Asset.query.filter_by(code=code).first_or_404()
    sheets = asset.datasheet_list()
    if request.method == 'POST':
        file = request.files.get('file') or request.files.get('ficha')
        if not file or not file.filename:
            abort(400, description='No file was provided')
        url = save_document(file, 'inventory/datasheets')
        sheets.append({'name': file.filename, 'url': url,
                       'date': dt.datetime.utcnow().isoformat()})
        action = 'added datasheet'
    else:
        url = request_data().get('url')
        remaining = [s for s in sheets if s.get('url') != url]
        if len(remaining) == len(sheets):
            abort(404, description='Datasheet not found')
        delete_upload(url)
        sheets = remaining
        action = 'removed datasheet'
    asset.datasheets = json.dumps(sheets)
    db.session.commit()
    log_action(action, asset=asset)
    return jsonify(datasheets=sheets)


@app.route('/api/inventory/upload-excel', methods=['POST'])
def import_assets():
    file = request.files.get('file') or request.files.get('excelFile')
    if not file or not file.filename:
        abort(400, description='No spreadsheet was uploaded')
    rows = read_import_rows(file)
    known_types = {t.name for t in AssetType.query.all()}

    assets = []
    skipped = []
    for number, values in rows:
        type_name = values.get('type_name')
        if type_name not in known_types or not values.get('name'):
            logger.warning('Import row %d skipped: type %r, name %r',
                           number, type_name, values.get('name'))
            skipped.append(number)
            continue
        # One code per row, in sheet order, inside this request's transaction.
        code = generate_asset_code(type_name, values['name'])
        assets.append(Asset(code=code, **_with_defaults(values)))

    if not assets:
        db.session.rollback()
        return jsonify(error='The spreadsheet has no valid inventory rows',
                       skipped=skipped), 400
    db.session.add_all(assets)
    db.session.commit()
    for asset in assets:
        generate_qr(asset.code)
    log_action('imported assets',
               description=f'{len(assets)} assets imported from {file.filename}')
    return jsonify(message=f'Imported {len(assets)} inventory records',
                   inserted=len(assets), codes=[a.code for a in assets],
                   skipped=skipped)


@app.route('/api/inventory/template')
def import_template():
    header = ','.join(['código'] + REQUIRED_IMPORT_HEADERS) + '\n'
    return Response(header, mimetype='text/csv',
                    headers={'Content-Disposition':
                             'attachment; filename=inventory_template.csv'})


def _store_activity_photos(activity):
    for field, attr in PHOTO_FIELDS.items():
        url = save_photo(request.files.get(attr), 'antes' if field == 'before' else 'despues')
        if url:
            delete_upload(getattr(activity, attr))
            setattr(activity, attr, url)


@app.route('/api/activities', methods=['POST'])
def register_activity():
    data = request_data()
    missing = [f for f in REQUIRED_ACTIVITY_FIELDS if not _text(data, f)]
    if missing:
        return jsonify(error='Missing required fields: ' + ', '.join(missing)), 400
    activity = Activity(site=_text(data, 'site'), activity=_text(data, 'activity'),
                        start_date=_parse_date(data['start_date'], 'start_date'),
                        end_date=_parse_date(data['end_date'], 'end_date'),
                        price=_parse_price(data['price']),
                        status=_text(data, 'status'),
                        responsible=_text(data, 'responsible'),
                        assignee=_text(data, 'assignee'),
                        creator_email=current_author(data),
                        observation=_text(data, 'observation'))
    _store_activity_photos(activity)
    db.session.add(activity)
    db.session.commit()
    log_action('registered activity', activity=activity)
    return jsonify(message='Activity registered', id=activity.id), 201


@app.route('/api/tasks/assign', methods=['POST'])
def assign_task():
    data = request_data()
    deadline = _text(data, 'deadline') or _text(data, 'end_date')
    missing = [f for f in ('site', 'activity', 'responsible') if not _text(data, f)]
    if not deadline:
        missing.append('deadline')
    if missing:
        return jsonify(error='Missing required fields: ' + ', '.join(missing)), 400
    deadline = _parse_date(deadline, 'deadline')
    today = dt.date.today()
    if deadline < today:
        abort(400, description='The deadline must be today or a later date')
    price = _text(data, 'price')
    activity = Activity(site=_text(data, 'site'), activity=_text(data, 'activity'),
                        start_date=today, end_date=deadline,
                        price=_parse_price(price) if price else None,
                        status='Pendiente',
                        responsible=_text(data, 'responsible'),
                        creator_email=current_author(data),
                        employee_name=_text(data, 'employee_name'),
                        employee_id=_text(data, 'employee_id'),
                        employee_role=_text(data, 'employee_role'),
                        requester_name=_text(data, 'requester_name'),
                        observation=_text(data, 'observation'))
    _store_activity_photos(activity)
    db.session.add(activity)
    db.session.commit()
    log_action('assigned task', activity=activity)
    return jsonify(message=f'Task assigned to {activity.responsible}', id=activity.id), 201


@app.route('/api/activities/history')
def activity_history():
    query = Activity.query
    for arg, column in (('creator', Activity.creator_email),
                        ('responsible', Activity.responsible),
                        ('site', Activity.site), ('status', Activity.status)):
        if request.args.get(arg):
            query = query.filter(column == request.args[arg])
    start = request.args.get('start')
    end = request.args.get('end')
    if start:
        try:
            query = query.filter(Activity.start_date >= dt.date.fromisoformat(start))
        except ValueError:
            pass
    if end:
        try:
            query = query.filter(Activity.start_date <= dt.date.fromisoformat(end))
        except ValueError:
            pass
    search = request.args.get('q')
    if search:
        query = query.filter(or_(Activity.activity.contains(search),
                                 Activity.observation.contains(search),
                                 Activity.responsible.contains(search),
                                 Activity.site.contains(search)))
    activities = query.order_by(Activity.created_at.desc(), Activity.id.desc()).all()
    return jsonify([a.to_dict() for a in activities])


@app.route('/api/activities/<int:activity_id>', methods=['PUT'])
def update_activity(activity_id):
    activity = db.get_or_404(Activity, activity_id)
    data = request_data()
    for field in ACTIVITY_TEXT_FIELDS:
        if field in data:
            value = _text(data, field)
            if field in ('site', 'activity') and not value:
                abort(400, description=f'{field} cannot be empty')
            setattr(activity, field, value)
    for field in ('start_date', 'end_date'):
        if field in data:
            value = _text(data, field)
            setattr(activity, field, _parse_date(value, field) if value else None)
    if 'price' in data:
        price = _text(data, 'price')
        activity.price = _parse_price(price) if price else None
    if 'observation' in data:
        observation = data.get('observation') or None
        if observation != activity.observation:
            # A client rewrote the whole trail; rebuild rows from the text.
            reset_follow_ups(activity)
            activity.observation = observation
    _store_activity_photos(activity)
    db.session.commit()
    log_action('edited activity', activity=activity)
    return jsonify(message='Activity updated', activity=activity.to_dict())


@app.route('/api/activities/<int:activity_id>', methods=['DELETE'])
def delete_activity(activity_id):
    activity = db.get_or_404(Activity, activity_id)
    log_action('deleted activity', activity=activity)
    for attr in PHOTO_FIELDS.values():
        delete_upload(getattr(activity, attr))
    db.session.delete(activity)
    db.session.commit()
    return jsonify(message='Activity deleted')


@app.route('/api/activities/<int:activity_id>/remove-image', methods=['POST'])
def remove_activity_image(activity_id):
    activity = db.get_or_404(Activity, activity_id)
    field = request_data().get('field')
    attr = PHOTO_FIELDS.get(field)
    if not attr:
        abort(400, description="field must be 'before' or 'after'")
    url = getattr(activity, attr)
    if not url:
        abort(404, description=f'The activity has no {field} image')
    delete_upload(url)
    setattr(activity, attr, None)
    db.session.commit()
    log_action('removed activity image', activity=activity,
               description=f'The {field} image of activity #{activity.id} was removed')
    return jsonify(message='Image removed', activity=activity.to_dict())


@app.route('/api/activities/<int:activity_id>/redirect', methods=['POST'])
def redirect_task(activity_id):
    activity = db.get_or_404(Activity, activity_id)
    data = request_data()
    new_responsible = _text(data, 'new_responsible')
    reason = _text(data, 'reason')
    if not new_responsible or not reason:
        abort(400, description='new_responsible and reason are required')
    previous = activity.responsible
    if new_responsible == previous:
        abort(400, description=f'The task is already assigned to {previous}')
    author = current_author(data) or previous
    activity.responsible = new_responsible
    add_follow_up(activity,
                  f'Task redirected from {previous} to {new_responsible}. Reason: {reason}',
                  author)
    db.session.commit()
    log_action('redirected task', activity=activity, user=author,
               description=f'Task #{activity.id} was redirected from {previous} to {new_responsible}')
    return jsonify(message=f'Task redirected to {new_responsible}',
                   activity=activity.to_dict())


@app.route('/api/activities/<int:activity_id>/follow-ups', methods=['GET', 'POST'])
def activity_follow_ups(activity_id):
    activity = db.get_or_404(Activity, activity_id)
    status = 200
    if request.method == 'POST':
        data = request_data()
        content = _text(data, 'content')
        author = current_author(data)
        if not content:
            abort(400, description='Follow-up content is required')
        if not author:
            abort(400, description='A follow-up needs an author')
        add_follow_up(activity, content, author)
        db.session.commit()
        log_action('added follow-up', activity=activity, user=author)
        status = 201
    elif migrate_follow_ups(activity):
        db.session.commit()
    newest_first = request.args.get('order', 'asc') == 'desc'
    return jsonify(entries_for_display(activity_entries(activity), newest_first)), status


@app.route('/api/logs')
def logs():
    q = History.query
    start = request.args.get('start')
    end = request.args.get('end')
    period = request.args.get('period')
    action = request.args.get('action')
    search = request.args.get('q')

    if period:
        now = dt.datetime.utcnow()
        if period == 'day':
            start = (now - dt.timedelta(days=1)).date().isoformat()
        elif period == 'week':
            start = (now - dt.timedelta(weeks=1)).date().isoformat()
        elif period == 'month':
            start = (now - dt.timedelta(days=30)).date().isoformat()

    if start:
        try:
            q = q.filter(History.timestamp >= dt.datetime.fromisoformat(start))
        except ValueError:
            pass
    if end:
        try:
            q = q.filter(History.timestamp <= dt.datetime.fromisoformat(end))
        except ValueError:
            pass
    if action:
        q = q.filter(History.action.contains(action))
    if search:
        q = q.filter(or_(History.description.contains(search),
                         History.user.contains(search)))

    entries = q.order_by(History.timestamp.desc(), History.id.desc()).all()
    return jsonify([h.to_dict() for h in entries])


@app.cli.command('migrate-follow-ups')
def migrate_follow_ups_command():
    """Convert legacy observation text into follow-up rows."""
    pending = Activity.query.filter(or_(Activity.follow_ups_migrated.is_(None),
                                        Activity.follow_ups_migrated.is_(False))).all()
    total = sum(migrate_follow_ups(activity) for activity in pending)
    db.session.commit()
    click.echo(f'Migrated {total} follow-ups from {len(pending)} activities')


if __name__ == '__main__':
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 4000)))
