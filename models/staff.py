from datetime import datetime
from models.db import db

class Staff(db.Model):
    __tablename__ = "staff"

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True, index=True)

    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="active")  # active, inactive

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
