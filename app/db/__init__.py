from .postgres import (  # noqa: F401
    DatabaseNotConfigured,
    dispose_postgres_engine,
    get_postgres_engine,
    ping_postgres,
    require_postgres_engine,
)
from .schema import ensure_analysis_schema  # noqa: F401
