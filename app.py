import logging

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from config import Config
from extensions import db, enable_sqlite_savepoints


def create_app(test_config=None):
    app = Flask(__name__)

    # Load configuration from Config, then any overrides (tests, scripts)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    logging.basicConfig(
        level=getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    db.init_app(app)

    import models  # noqa: F401 - registers tables on db.metadata
    from routes.setup_routes import setup_bp

    app.register_blueprint(setup_bp)

    with app.app_context():
        if db.engine.dialect.name == "sqlite":
            enable_sqlite_savepoints(db.engine)
        if app.config.get("AUTO_CREATE_TABLES"):
            db.create_all()

    @app.errorhandler(Exception)
    def _unhandled(exc):
        if isinstance(exc, HTTPException):
            return jsonify({"success": False, "message": exc.description}), exc.code
        app.logger.exception("Unhandled error")
        return jsonify({"success": False, "message": "Internal server error"}), 500

    @app.route("/")
    def index():
        return jsonify({"service": "school-setup", "endpoints": sorted(
            str(rule) for rule in app.url_map.iter_rules() if str(rule).startswith("/setup")
        )})

    return app


if __name__ == "__main__":
    create_app().run(debug=True)
