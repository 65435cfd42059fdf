from datetime import datetime
from models.db import db

class Offer(db.Model):
    __tablename__ = "offers"

    id = db.Column(db.Integer, primary_key=True)
    service_id = db.Column(db.Integer, db.ForeignKey("services.id"), nullable=False, index=True)

    title = db.Column(db.String(160), nullable=True)
    discount_percentage = db.Column(db.Numeric(5, 2), nullable=False)
    expiration_date = db.Column(db.DateTime, nullable=True)

    status = db.Column(db.String(20), nullable=False, default="active")
    # status values: active, inactive, expired, paused

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    service = db.relationship("Service", lazy="joined")
