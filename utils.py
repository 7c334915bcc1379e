import os
import io
import re
import csv
import time
import uuid
import logging
import unicodedata
import zipfile

import qrcode
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from PIL import Image, ImageOps, UnidentifiedImageError
from flask import current_app, has_request_context, request
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.utils import secure_filename

from models import db, AssetType, History

logger = logging.getLogger(__name__)

ASSET_CODE_PREFIX = 'MT'
FALLBACK_TYPE_CODE = 'GEN'
FALLBACK_CODE_RE = re.compile(
    rf'^{ASSET_CODE_PREFIX}-{FALLBACK_TYPE_CODE}-\S{{0,3}}-[0-9A-F]{{3}}$')

UPLOAD_URL_PREFIX = '/uploads/'

# Spreadsheet header -> Asset column. 'código' is accepted but ignored,
# codes are always generated.
IMPORT_COLUMNS = {
    'código': None,
    'nombre del activo': 'name',
    'tipo de activo': 'type_name',
    'sede': 'site',
    'clasificación por ubicación': 'location',
    'estado del activo': 'status',
    'frecuencia de mantenimiento': 'maintenance_frequency',
    'responsable de gestión interno/externo': 'manager',
}
REQUIRED_IMPORT_HEADERS = [h for h, col in IMPORT_COLUMNS.items() if col]


class SequenceUpdateError(RuntimeError):
    """The per-type counter could not be advanced; no code may be issued."""


class ImportFormatError(ValueError):
    pass


class UploadError(ValueError):
    pass


def request_data():
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form


def current_author(data=None):
    """Identity forwarded by the auth proxy, or the author given in the body."""
    author = request.headers.get('X-User-Email')
    if not author and data is not None:
        author = data.get('author') or data.get('creator_email')
    return author.strip() if author else None


def _fallback_code(asset_name: str) -> str:
    name_part = re.sub(r'\s', '', asset_name).upper()[:3] if asset_name else ''
    suffix = uuid.uuid4().hex[:3].upper()
    return f"{ASSET_CODE_PREFIX}-{FALLBACK_TYPE_CODE}-{name_part or 'ACC'}-{suffix}"


def is_fallback_code(code: str) -> bool:
    return bool(code) and FALLBACK_CODE_RE.match(code) is not None


def _increment_sequence(type_id: int) -> int:
    """Advance the counter in the database and return the new value.

    The increment is a single UPDATE evaluated by the database, so the
    row stays locked until the surrounding transaction ends and two
    registrations of the same type cannot issue the same number."""
    result = db.session.execute(
        update(AssetType)
        .where(AssetType.id == type_id)
        .values(last_sequence=AssetType.last_sequence + 1)
        .execution_options(synchronize_session=False))
    if result.rowcount != 1:
        raise SequenceUpdateError(f'asset type {type_id} vanished during update')
    return db.session.execute(
        select(AssetType.last_sequence).where(AssetType.id == type_id)).scalar_one()


def _find_type(type_name: str):
    return AssetType.query.filter_by(name=type_name).first()


def generate_asset_code(type_name: str, asset_name: str) -> str:
    """Return the next ``MT-<TYPE>-<NNN>`` code for ``type_name``.

    An unknown type (or a failed lookup) yields a non-sequential fallback
    code built from ``asset_name``; callers can spot it with
    :func:`is_fallback_code`. A failed counter update raises
    :class:`SequenceUpdateError` and the caller must roll back."""
    try:
        # A failed lookup only unwinds the savepoint; increments already
        # made in this transaction stay.
        with db.session.begin_nested():
            asset_type = _find_type(type_name)
    except SQLAlchemyError as exc:
        logger.warning('Asset type lookup failed for %r: %s', type_name, exc)
        asset_type = None

    if asset_type is None:
        code = _fallback_code(asset_name)
        logger.warning('No asset type named %r, issued fallback code %s',
                       type_name, code)
        return code

    try:
        sequence = _increment_sequence(asset_type.id)
    except SQLAlchemyError as exc:
        logger.error('Failed to advance sequence for type %s: %s',
                     asset_type.code, exc)
        raise SequenceUpdateError(
            f'Failed to update the sequence for type {type_name}: {exc}') from exc
    db.session.expire(asset_type, ['last_sequence'])
    return f'{ASSET_CODE_PREFIX}-{asset_type.code}-{sequence:03d}'


def qr_path(code: str) -> str:
    return os.path.join(current_app.config['QR_FOLDER'],
                        secure_filename(f'{code}.png'))


def generate_qr(code: str):
    img = qrcode.make(code)
    path = qr_path(code)
    img.save(path)
    return path


def _safe_stem(filename: str) -> str:
    stem = os.path.splitext(filename or '')[0]
    stem = unicodedata.normalize('NFKD', stem).encode('ascii', 'ignore').decode()
    return secure_filename(stem)[:60] or 'file'


def optimize_image(data: bytes, max_side: int, quality: int) -> bytes:
    """Re-encode an uploaded photo as WebP, oriented and fitted to max_side."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            img = ImageOps.exif_transpose(img)
            if img.mode not in ('RGB', 'RGBA'):
                img = img.convert('RGB')
            img.thumbnail((max_side, max_side), Image.Resampling.LANCZOS)
            out = io.BytesIO()
            img.save(out, 'WEBP', quality=quality)
    except (UnidentifiedImageError, OSError) as exc:
        logger.warning('Could not optimise uploaded image: %s', exc)
        raise UploadError('The uploaded file is not a readable image') from exc
    return out.getvalue()


def _store(data: bytes, folder: str, filename: str) -> str:
    target_dir = os.path.join(current_app.config['UPLOAD_FOLDER'], folder)
    os.makedirs(target_dir, exist_ok=True)
    with open(os.path.join(target_dir, filename), 'wb') as fh:
        fh.write(data)
    return f'{UPLOAD_URL_PREFIX}{folder}/{filename}'


def save_photo(file, folder: str):
    if not file or not file.filename:
        return None
    data = optimize_image(file.read(), current_app.config['IMAGE_MAX_SIDE'],
                          current_app.config['IMAGE_QUALITY'])
    name = f'{int(time.time() * 1000)}_{_safe_stem(file.filename)}.webp'
    return _store(data, folder, name)


def save_document(file, folder: str):
    if not file or not file.filename:
        return None
    ext = secure_filename(os.path.splitext(file.filename)[1].lstrip('.'))
    name = f'{int(time.time() * 1000)}_{_safe_stem(file.filename)}'
    if ext:
        name = f'{name}.{ext}'
    return _store(file.read(), folder, name)


def delete_upload(url):
    """Remove a stored upload; URLs pointing elsewhere are left alone."""
    if not url or not url.startswith(UPLOAD_URL_PREFIX):
        return
    root = os.path.abspath(current_app.config['UPLOAD_FOLDER'])
    path = os.path.abspath(os.path.join(root, url[len(UPLOAD_URL_PREFIX):]))
    if path.startswith(root + os.sep) and os.path.exists(path):
        os.remove(path)


def _normalize_header(value) -> str:
    if value is None:
        return ''
    return unicodedata.normalize('NFC', str(value)).strip().lower()


def _cell_text(value):
    if value is None:
        return None
    if hasattr(value, 'isoformat'):
        value = value.isoformat()
    text = str(value).strip()
    return text or None


def _sheet_rows(file):
    data = file.read()
    if (file.filename or '').lower().endswith('.csv'):
        try:
            text = data.decode('utf-8-sig')
        except UnicodeDecodeError as exc:
            raise ImportFormatError('The CSV file must be UTF-8 encoded') from exc
        return list(csv.reader(io.StringIO(text)))
    try:
        wb = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError) as exc:
        raise ImportFormatError('The file is not a valid Excel workbook') from exc
    try:
        if not wb.worksheets:
            raise ImportFormatError('The workbook has no sheets')
        return [list(r) for r in wb.worksheets[0].iter_rows(values_only=True)]
    finally:
        wb.close()


def read_import_rows(file):
    """Return ``(row_number, values)`` pairs for every non-empty data row.

    ``values`` maps Asset column names to stripped cell text."""
    rows = _sheet_rows(file)
    if not rows:
        raise ImportFormatError('The first sheet is empty')
    headers = [_normalize_header(h) for h in rows[0]]
    missing = [h for h in REQUIRED_IMPORT_HEADERS if h not in headers]
    if missing:
        raise ImportFormatError(
            'Missing headers in the first sheet: ' + ', '.join(missing))
    columns = [(idx, IMPORT_COLUMNS[h]) for idx, h in enumerate(headers)
               if IMPORT_COLUMNS.get(h)]
    result = []
    for number, row in enumerate(rows[1:], start=2):
        values = {}
        for idx, column in columns:
            values[column] = _cell_text(row[idx]) if idx < len(row) else None
        if any(values.values()):
            result.append((number, values))
    return result


def log_action(action, asset=None, activity=None, description=None, user=None):
    if description is None:
        if action == 'registered asset' and asset:
            description = f'Asset {asset.code} ({asset.name}) was registered'
        elif action == 'fallback asset code' and asset:
            description = (f'Asset {asset.name} got non-sequential code {asset.code}: '
                           f'type {asset.type_name!r} was not found')
        elif action == 'edited asset' and asset:
            description = f'Asset {asset.code} was edited'
        elif action == 'deleted asset' and asset:
            description = f'Asset {asset.code} ({asset.name}) was deleted'
        elif action == 'added datasheet' and asset:
            description = f'A datasheet was added to asset {asset.code}'
        elif action == 'removed datasheet' and asset:
            description = f'A datasheet was removed from asset {asset.code}'
        elif action == 'registered activity' and activity:
            description = f'Activity #{activity.id} at {activity.site} was registered'
        elif action == 'assigned task' and activity:
            description = f'Task #{activity.id} was assigned to {activity.responsible}'
        elif action == 'edited activity' and activity:
            description = f'Activity #{activity.id} was edited'
        elif action == 'deleted activity' and activity:
            description = f'Activity #{activity.id} at {activity.site} was deleted'
        elif action == 'added follow-up' and activity:
            description = f'A follow-up was added to activity #{activity.id}'
        else:
            description = action
    h = History(action=action, description=description, asset=asset,
                activity=activity,
                user=user if user is not None else _request_author())
    db.session.add(h)
    db.session.commit()


def _request_author():
    return current_author() if has_request_context() else None
