from datetime import datetime
from models.db import db

class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    # provider-side reference, "booking:<booking_id>"; the booking points here via payment_id
    reference = db.Column(db.String(120), nullable=True)

    provider = db.Column(db.String(20), nullable=False, default="STRIPE")
    method = db.Column(db.String(30), nullable=True)
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    currency = db.Column(db.String(10), nullable=False, default="KES")

    status = db.Column(db.String(20), nullable=False, default="INIT")  # INIT, PAID, FAILED, REFUND_REQUESTED
    transaction_id = db.Column(db.String(255), nullable=True, unique=True, index=True)
    failure_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    paid_at = db.Column(db.DateTime, nullable=True)
