import logging
from typing import Optional

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from schemagate.api.deps import catalog_dep

router = APIRouter(prefix="/agent", tags=["Schema"])


@router.get("/schema")
async def get_schema(
    catalog_service: catalog_dep,
    table: Optional[str] = None,
    refresh: bool = False,
):
    """
    Schema catalog snapshot for agents and admin tools.
    Pass `table` (any alias) to focus on one table, `refresh=true` to re-introspect.
    """
    catalog = await catalog_service.get(force_refresh=refresh)

    try:
        snapshot = catalog.to_snapshot(table)
    except LookupError as error:
        logging.info(f"Schema lookup failed: {error}")
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={
                "success": False,
                "error": {"code": "TABLE_NOT_FOUND", "message": str(error)},
            },
        )

    return {"success": True, "data": snapshot}
