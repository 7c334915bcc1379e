import datetime as dt
import json
from flask_sqlalchemy import SQLAlchemy

# Create SQLAlchemy database instance to be initialized in app.py
db = SQLAlchemy()


class TimestampMixin:
    created_at = db.Column(db.DateTime, default=dt.datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=dt.datetime.utcnow,
                           onupdate=dt.datetime.utcnow)


class AssetType(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String, unique=True, nullable=False)
    name = db.Column(db.String, unique=True, nullable=False)
    description = db.Column(db.Text)
    last_sequence = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self):
        return {'code': self.code, 'name': self.name,
                'description': self.description,
                'last_sequence': self.last_sequence}


class Asset(db.Model, TimestampMixin):
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String, nullable=False, index=True)
    name = db.Column(db.String, nullable=False)
    type_name = db.Column(db.String, nullable=False)
    site = db.Column(db.String, default='Sin Sede')
    location = db.Column(db.String, default='Sin Ubicación')
    brand = db.Column(db.String)
    model_reference = db.Column(db.String)
    serial = db.Column(db.String)
    status = db.Column(db.String, default='Inactivo')
    photo = db.Column(db.String)
    power = db.Column(db.String)
    voltage_phase = db.Column(db.String)
    capacity = db.Column(db.String)
    plate_diameter = db.Column(db.String)
    available_plates = db.Column(db.String)
    main_material = db.Column(db.String)
    safety_guards = db.Column(db.String)
    purchase_date = db.Column(db.String)
    supplier = db.Column(db.String)
    warranty_until = db.Column(db.String)
    purchase_cost = db.Column(db.String)
    manager = db.Column(db.String, default='Por asignar')
    manager_contact = db.Column(db.String)
    maintenance_frequency = db.Column(db.String, default='N/A')
    last_maintenance = db.Column(db.String)
    next_maintenance = db.Column(db.String)
    minimum_ppe = db.Column(db.Text)
    critical_risks = db.Column(db.Text)
    safe_cleaning = db.Column(db.Text)
    risk_document = db.Column(db.String)
    datasheets = db.Column(db.Text)

    histories = db.relationship('History', backref='asset', lazy=True)

    # Columns a client may set directly; code and datasheets are managed.
    EDITABLE = ('name', 'type_name', 'site', 'location', 'brand',
                'model_reference', 'serial', 'status', 'power',
                'voltage_phase', 'capacity', 'plate_diameter',
                'available_plates', 'main_material', 'safety_guards',
                'purchase_date', 'supplier', 'warranty_until',
                'purchase_cost', 'manager', 'manager_contact',
                'maintenance_frequency', 'last_maintenance',
                'next_maintenance', 'minimum_ppe', 'critical_risks',
                'safe_cleaning')

    def datasheet_list(self):
        if not self.datasheets:
            return []
        try:
            sheets = json.loads(self.datasheets)
        except ValueError:
            return []
        return sheets if isinstance(sheets, list) else []

    def to_dict(self):
        data = {col: getattr(self, col) for col in self.EDITABLE}
        data.update(id=self.id, code=self.code, photo=self.photo,
                    risk_document=self.risk_document,
                    datasheets=self.datasheet_list(),
                    created_at=self.created_at.isoformat() if self.created_at else None)
        return data


class Activity(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    created_at = db.Column(db.DateTime, default=dt.datetime.utcnow)
    site = db.Column(db.String, nullable=False)
    activity = db.Column(db.Text, nullable=False)
    start_date = db.Column(db.Date)
    end_date = db.Column(db.Date)
    price = db.Column(db.Float)
    status = db.Column(db.String)
    responsible = db.Column(db.String)
    assignee = db.Column(db.String)
    creator_email = db.Column(db.String)
    employee_name = db.Column(db.String)
    employee_id = db.Column(db.String)
    employee_role = db.Column(db.String)
    requester_name = db.Column(db.String)
    observation = db.Column(db.Text)
    follow_ups_migrated = db.Column(db.Boolean, default=False)
    photo_before = db.Column(db.String)
    photo_after = db.Column(db.String)

    follow_ups = db.relationship('FollowUp', backref='activity', lazy=True,
                                 order_by='FollowUp.position',
                                 cascade='all, delete-orphan')
    histories = db.relationship('History', backref='activity', lazy=True)

    def to_dict(self):
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'site': self.site,
            'activity': self.activity,
            'start_date': self.start_date.isoformat() if self.start_date else None,
            'end_date': self.end_date.isoformat() if self.end_date else None,
            'price': self.price,
            'status': self.status,
            'responsible': self.responsible,
            'assignee': self.assignee,
            'creator_email': self.creator_email,
            'employee_name': self.employee_name,
            'employee_id': self.employee_id,
            'employee_role': self.employee_role,
            'requester_name': self.requester_name,
            'observation': self.observation,
            'photo_before': self.photo_before,
            'photo_after': self.photo_after,
        }


class FollowUp(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    activity_id = db.Column(db.Integer, db.ForeignKey('activity.id'), nullable=False)
    position = db.Column(db.Integer, nullable=False)
    author = db.Column(db.String)
    timestamp = db.Column(db.String)
    content = db.Column(db.Text, nullable=False)
    legacy = db.Column(db.Boolean, default=False)


class History(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    timestamp = db.Column(db.DateTime, default=dt.datetime.utcnow)
    asset_id = db.Column(db.Integer, db.ForeignKey('asset.id', ondelete='SET NULL'))
    activity_id = db.Column(db.Integer, db.ForeignKey('activity.id', ondelete='SET NULL'))
    user = db.Column(db.String)
    action = db.Column(db.String)
    description = db.Column(db.Text)

    def to_dict(self):
        return {'timestamp': self.timestamp.isoformat(),
                'action': self.action, 'description': self.description,
                'user': self.user, 'asset_id': self.asset_id,
                'activity_id': self.activity_id}
