from .health import health_bp
from .slots import offers_bp
from .booking import booking_bp
from .merchant import merchant_bp
from .admin import admin_bp
from .stripe_webhook import webhook_bp
