"""Web routes for oidcrp."""

from flask import Blueprint, Flask

main_bp = Blueprint("main", __name__)


@main_bp.route("/health")
def health() -> dict[str, str]:
    """Health check endpoint (unauthenticated)."""
    return {"status": "healthy"}


def init_app(app: Flask) -> None:
    """Register blueprints with the Flask app."""
    from oidcrp.web.routes.oidc import oidc_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(oidc_bp)
