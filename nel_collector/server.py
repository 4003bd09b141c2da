import sys

import uvicorn

from nel_collector.config import load_settings
from nel_collector.main import create_app, logger


def main() -> int:
    settings = load_settings()
    # No default table: fail fast rather than write somewhere surprising.
    if not settings.db_table:
        print("Must supply NEL_DB_TABLE=<tablename> at a minimum", file=sys.stderr)
        return 1

    app = create_app(settings)
    logger.info("Listening on %s:%d", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level="info")
    return 0


if __name__ == "__main__":
    sys.exit(main())
