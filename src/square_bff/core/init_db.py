"""Initialize the database tables and purge expired OAuth states."""

import logging

from square_bff.core.database import create_db_engine, create_session_factory, init_db
from square_bff.core.dependencies import get_settings
from square_bff.oauth.pkce import PKCEStateStore
from square_bff.storage.sql import SqlStateStore

logger = logging.getLogger("init_db")


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    settings = get_settings()
    engine = create_db_engine(settings.database_url, settings.database_timeout_seconds)

    logger.info("Creating database tables...")
    init_db(engine)
    logger.info("Tables created successfully!")

    store = PKCEStateStore(
        SqlStateStore(create_session_factory(engine)),
        ttl_seconds=settings.oauth_state_ttl_seconds,
    )
    logger.info("Purged %d expired OAuth states", store.purge_expired())
    engine.dispose()


if __name__ == "__main__":
    main()
