from .main import main_routes_bp
from .imports import imports_bp
from .bitrix import bitrix_bp
from .snapshots import snapshots_bp
from .compare import compare_bp
from .schema import schema_bp

__all__ = ["main_routes_bp", "imports_bp", "bitrix_bp", "snapshots_bp", "compare_bp", "schema_bp"]
