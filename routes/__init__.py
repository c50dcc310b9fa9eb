"""Blueprint registration."""

from routes.automation import automation_bp
from routes.invoices import invoices_bp
from routes.payments import payments_bp
from routes.reports import reports_bp
from routes.subscriptions import subscriptions_bp

ALL_BLUEPRINTS = [
    subscriptions_bp,
    invoices_bp,
    payments_bp,
    automation_bp,
    reports_bp,
]


def register_blueprints(app):
    """Register all application blueprints on *app*."""
    for bp in ALL_BLUEPRINTS:
        app.register_blueprint(bp)
