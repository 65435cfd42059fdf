from datetime import datetime
from models.db import db

BOOKING_STATUSES = (
    "pending",
    "confirmed",
    "checked_in",
    "completed",
    "cancelled",
    "no_show",
    "expired",
)
TERMINAL_STATUSES = frozenset({"completed", "cancelled", "no_show", "expired"})
# statuses that no longer hold slot capacity
RELEASED_STATUSES = frozenset({"cancelled", "no_show", "expired"})

class Booking(db.Model):
    __tablename__ = "bookings"

    id = db.Column(db.Integer, primary_key=True)

    # "offer" bookings redeem a discount offer, "service" bookings book the service directly
    booking_kind = db.Column(db.String(20), nullable=False, default="offer")
    offer_id = db.Column(db.Integer, db.ForeignKey("offers.id"), nullable=True, index=True)
    service_id = db.Column(db.Integer, db.ForeignKey("services.id"), nullable=False, index=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=True, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.id"), nullable=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True)

    start_time = db.Column(db.DateTime, nullable=False, index=True)
    end_time = db.Column(db.DateTime, nullable=False)

    # capacity bookkeeping: a live booking holds seat 1..capacity of its slot
    capacity_scope = db.Column(db.String(80), nullable=False)
    seat_no = db.Column(db.Integer, nullable=True)

    status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    payment_status = db.Column(db.String(20), nullable=False, default="unpaid")
    # payment_status values: unpaid, paid, not_required, refund_requested

    access_fee = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    verification_code = db.Column(db.String(20), nullable=True)
    qr_artifact = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    confirmed_at = db.Column(db.DateTime, nullable=True)

    checked_in_at = db.Column(db.DateTime, nullable=True)
    service_started_at = db.Column(db.DateTime, nullable=True)
    service_end_time = db.Column(db.DateTime, nullable=True)

    completed_at = db.Column(db.DateTime, nullable=True)
    auto_completed = db.Column(db.Boolean, nullable=False, default=False)
    completion_method = db.Column(db.String(20), nullable=True)  # manual, automatic
    completion_details = db.Column(db.JSON, nullable=True)
    actual_duration = db.Column(db.Integer, nullable=True)

    no_show_marked_at = db.Column(db.DateTime, nullable=True)
    no_show_reason = db.Column(db.Text, nullable=True)
    no_show_details = db.Column(db.JSON, nullable=True)

    cancelled_at = db.Column(db.DateTime, nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)
    cancelled_by = db.Column(db.String(20), nullable=True)  # customer, merchant

    rescheduled_at = db.Column(db.DateTime, nullable=True)
    reschedule_reason = db.Column(db.Text, nullable=True)
    reschedule_count = db.Column(db.Integer, nullable=False, default=0)

    expired_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    offer = db.relationship("Offer")
    service = db.relationship("Service")
    user = db.relationship("User")
    store = db.relationship("Store")
    staff = db.relationship("Staff")
    payment = db.relationship("Payment")

    __table_args__ = (
        # Hard business-rule: a seat of a slot can only be held once (prevents over-booking)
        db.UniqueConstraint("capacity_scope", "start_time", "seat_no", name="uq_booking_slot_seat"),
        db.Index("ix_bookings_status_start", "status", "start_time"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
