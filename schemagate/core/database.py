from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import DeclarativeBase

from schemagate.core.config import settings
from schemagate.core.pseudo_api.catalog import SchemaCatalogService

engine = create_async_engine(settings.DATABASE_URL, echo=settings.SQL_ECHO)

# One catalog per process, every run reads the same cached snapshot
catalog_service = SchemaCatalogService(engine, schema=settings.DATABASE_SCHEMA)


# The "Bridge" that gives routes access to the schema catalog
def get_catalog_service() -> SchemaCatalogService:
    return catalog_service


# All the models are "stored" in the Base class will be processed by the Engine
class Base(DeclarativeBase):
    pass
