from keyshop.routes.main import bp as main_bp
from keyshop.routes.admin import bp as admin_bp


def register_blueprints(app):
    """Register all blueprints with the Flask app."""
    app.register_blueprint(main_bp)
    app.register_blueprint(admin_bp)
