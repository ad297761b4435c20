"""
Job registry initialization.

Handler modules register themselves with the global job registry when
imported; this module imports the ones named in settings.
"""

import importlib

from portal_jobs.config.logging import get_logger
from portal_jobs.config.settings import Settings, settings as default_settings
from portal_jobs.v1.core.registries import job_registry

logger = get_logger(__name__)


def register_job_handlers(settings: Settings | None = None) -> list[str]:
    """Import configured handler modules and return the registered job types."""
    settings = settings or default_settings

    logger.info("Registering job handlers", modules=settings.handler_modules)

    for module_name in settings.handler_modules:
        importlib.import_module(module_name)

    registered = job_registry.list()
    logger.info("Job handlers registered", registered_handlers=registered)
    return registered
