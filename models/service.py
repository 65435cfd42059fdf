from datetime import datetime
from models.db import db

class Service(db.Model):
    __tablename__ = "services"

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    # branch-scoped services use the branch's working hours
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True, index=True)

    name = db.Column(db.String(160), nullable=False)
    price = db.Column(db.Numeric(10, 2), nullable=False, default=0)

    duration_minutes = db.Column(db.Integer, nullable=True)
    buffer_time_minutes = db.Column(db.Integer, nullable=False, default=0)
    grace_period_minutes = db.Column(db.Integer, nullable=True)
    min_advance_booking_minutes = db.Column(db.Integer, nullable=True)
    max_advance_booking_minutes = db.Column(db.Integer, nullable=True)
    max_concurrent_bookings = db.Column(db.Integer, nullable=False, default=1)
    exclusive_staff_time = db.Column(db.Boolean, nullable=False, default=True)

    # fee-less bookings confirm straight away unless the merchant reviews them
    auto_confirm_bookings = db.Column(db.Boolean, nullable=False, default=True)
    auto_complete_on_duration = db.Column(db.Boolean, nullable=False, default=True)
    allow_early_checkin = db.Column(db.Boolean, nullable=False, default=False)
    early_checkin_minutes = db.Column(db.Integer, nullable=True)
    min_cancellation_hours = db.Column(db.Integer, nullable=False, default=0)

    booking_enabled = db.Column(db.Boolean, nullable=False, default=True)
    status = db.Column(db.String(20), nullable=False, default="active")  # active, inactive, suspended

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    store = db.relationship("Store", lazy="joined")
    branch = db.relationship("Branch")
