from datetime import datetime
from models.db import db

class Branch(db.Model):
    __tablename__ = "branches"

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    address = db.Column(db.String(255), nullable=True)

    # when set, these override the store's hours for branch-scoped services
    opening_time = db.Column(db.String(8), nullable=True)
    closing_time = db.Column(db.String(8), nullable=True)
    working_days = db.Column(db.JSON, nullable=True)

    status = db.Column(db.String(20), nullable=False, default="active")  # active, inactive
    is_main_branch = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
