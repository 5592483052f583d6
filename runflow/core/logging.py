import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # psycopg logs every connection attempt at INFO
    logging.getLogger("psycopg").setLevel(logging.WARNING)
