from datetime import datetime
from models.db import db

class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    channel = db.Column(db.String(20), nullable=False, default="push")
    kind = db.Column(db.String(60), nullable=False)  # e.g. booking_created, booking_no_show
    title = db.Column(db.String(160), nullable=False)
    body = db.Column(db.Text, nullable=True)
    context_json = db.Column(db.JSON, nullable=True)

    read_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
