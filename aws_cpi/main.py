import logging

from fastapi import FastAPI

from aws_cpi.api import router
from aws_cpi.config import get_settings
from aws_cpi.logging_config import configure_logging


logger = logging.getLogger(__name__)


app = FastAPI(title="AWS Cloud Provider Interface")
app.include_router(router)


@app.on_event("startup")
def startup() -> None:
    configure_logging()
    settings = get_settings()
    settings.validate_provider()
    logger.info(
        "cpi startup complete region=%s registry_enabled=%s",
        settings.region,
        settings.registry_enabled,
    )
