from .db import db
from .user import User, Role, user_roles
from .audit_log import AuditLog
from .session import Session
from .store import Store
from .branch import Branch
from .staff import Staff
from .service import Service
from .offer import Offer
from .payment import Payment
from .booking import Booking
from .notification import Notification
