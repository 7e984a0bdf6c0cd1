# /app/__init__.py
import os
import json
import logging
from flask import Flask
from dotenv import load_dotenv
from config import ProductionConfig
from services.database import init_db_command, create_db_manager, init_db
from services.config_service import ConfigManager
from services.job_service import cleanup_stale_jobs
from pathlib import Path
from app.routes import main_routes_bp, imports_bp, bitrix_bp, snapshots_bp, compare_bp, schema_bp


load_dotenv()


def init_sentry():
    """Initialize Sentry error tracking if SENTRY_DSN is configured."""
    sentry_dsn = os.getenv("SENTRY_DSN")
    if not sentry_dsn:
        return

    try:
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration
        from sentry_sdk.integrations.logging import LoggingIntegration

        environment = os.getenv("FLASK_ENV") or os.getenv("ENV") or "development"

        sentry_sdk.init(
            dsn=sentry_dsn,
            environment=environment,
            integrations=[
                FlaskIntegration(),
                LoggingIntegration(
                    level=logging.INFO,       # breadcrumbs
                    event_level=logging.ERROR  # events
                ),
            ],
            traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1")),
            attach_stacktrace=True,
            debug=os.getenv("SENTRY_DEBUG", "0") == "1",
        )
        logging.info(f"Sentry initialized for environment: {environment}")
    except ImportError:
        logging.warning("sentry-sdk not installed, error tracking disabled")
    except Exception as e:
        logging.error(f"Failed to initialize Sentry: {e}")


def create_app(config_name: str = "", overrides: dict | None = None):
    import time
    from flask import g

    init_sentry()

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(ProductionConfig)

    # Secret
    app.secret_key = os.getenv("FLASK_SECRET", os.urandom(24))

    if config_name:
        app.config.from_object(f"config.{config_name}Config")

    # Merge JSON config (bitrix, snapshots, timezone)
    config_path = (overrides or {}).get("CONFIG_JSON_PATH") or app.config["CONFIG_JSON_PATH"]
    config_manager = ConfigManager(config_path)
    app.config.update(config_manager.config)
    app.config["TIMEZONE"] = app.config.get("timezone") or app.config["TIMEZONE"]

    snapshots_cfg = app.config.get("snapshots", {})
    app.config.setdefault("SNAPSHOT_LOCAL_FILE", snapshots_cfg.get("local_file", "snapshots.json"))
    app.config["SNAPSHOT_LOCAL_LIMIT"] = snapshots_cfg.get("local_limit", app.config["SNAPSHOT_LOCAL_LIMIT"])
    app.config["SNAPSHOT_KEEP"] = snapshots_cfg.get("keep", app.config["SNAPSHOT_KEEP"])

    if overrides:
        app.config.update(overrides)

    # base dirs
    project_root = Path(__file__).resolve().parent.parent
    instance_root = Path(app.instance_path)
    instance_root.mkdir(parents=True, exist_ok=True)
    app.config["PROJECT_ROOT"] = str(project_root)
    app.config["INSTANCE_ROOT"] = str(instance_root)

    def _set_path(key: str, default_rel: str | Path, *, base: str = "instance", is_file: bool = False):
        """
        Resolve a config path and ensure its directory exists.
        - If app.config[key] is absolute, use it as-is.
        - If it's relative, anchor to `instance` (default) or `project`.
        - If it's missing, use `default_rel` anchored to the chosen base.
        - If `is_file=True`, create the parent dir; else create the dir itself.
        """
        val = app.config.get(key)
        base_dir = instance_root if base == "instance" else project_root

        if val:
            p = Path(val)
            if not p.is_absolute():
                p = (base_dir / p).resolve()
        else:
            p = (base_dir / Path(default_rel)).resolve()

        (p.parent if is_file else p).mkdir(parents=True, exist_ok=True)
        app.config[key] = str(p)
        return p

    _set_path("EXPORT_ROOT", app.config["EXPORT_ROOT_SUBDIR"], base="instance", is_file=False)
    _set_path("database", "crm_dashboard.db", base="instance", is_file=True)
    _set_path("SNAPSHOT_LOCAL_FILE", "snapshots.json", base="instance", is_file=True)

    logging.basicConfig(
        level=logging.DEBUG if app.config.get("DEBUG") else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        force=True,  # prevent duplicate handlers in some reload scenarios
    )
    logging.debug("database=%s  snapshots=%s", app.config["database"], app.config["SNAPSHOT_LOCAL_FILE"])

    # Users from env unless already set (tests)
    if "USERS" not in app.config:
        app.config["USERS"] = json.loads(os.getenv("USERS", "{}"))

    app.extensions["config_manager"] = config_manager
    app.extensions["db_manager"] = create_db_manager(app.config["database"])
    init_db(app.extensions["db_manager"])

    @app.before_request
    def before_request():
        """Per-request DB + request timing."""
        g.db = create_db_manager(app.config["database"])
        g.start_time = time.time()

    @app.after_request
    def after_request(response):
        if hasattr(g, "start_time"):
            duration = time.time() - g.start_time
            response.headers["X-Request-Duration"] = f"{duration:.3f}"
        return response

    @app.teardown_request
    def teardown_request(_):
        db = getattr(g, "db", None)
        if db is not None:
            db.close()

    # Blueprints
    app.register_blueprint(main_routes_bp)
    app.register_blueprint(imports_bp)
    app.register_blueprint(bitrix_bp)
    app.register_blueprint(snapshots_bp)
    app.register_blueprint(compare_bp)
    app.register_blueprint(schema_bp)

    # CLI
    app.cli.add_command(init_db_command)  # type: ignore

    cleanup_stale_jobs(app.extensions["db_manager"])

    return app
