from datetime import datetime
from models.db import db

class Store(db.Model):
    __tablename__ = "stores"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    location = db.Column(db.String(160), nullable=True)

    owner_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # store-local working hours, "HH:MM"
    opening_time = db.Column(db.String(8), nullable=True)
    closing_time = db.Column(db.String(8), nullable=True)
    working_days = db.Column(db.JSON, nullable=True)  # ["monday", "tuesday", ...]
    timezone = db.Column(db.String(64), nullable=True)

    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
