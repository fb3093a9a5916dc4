import logging

from fastapi import FastAPI

from procurement.config import settings
from procurement.routers import procurement
from procurement.services.migration_flags import get_migration_flags

logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
)

app = FastAPI(title='Procurement Quota & Status Cascade')

app.include_router(procurement.router)

# Resolve and log the phase once at import so a bad flag combination shows up at boot.
get_migration_flags()


@app.get('/health')
def health() -> dict:
    return {'status': 'ok', 'phase': get_migration_flags().phase.value}
