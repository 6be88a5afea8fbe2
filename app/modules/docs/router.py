"""
Documentación de la API: especificación OpenAPI (YAML/JSON) y Swagger UI.
"""
from typing import Literal
import yaml
from fastapi import APIRouter, Query, Request
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import JSONResponse, Response

docs_router = APIRouter()


@docs_router.get("/openapi", include_in_schema=False)
async def openapi_document(
    request: Request,
    format: Literal["yaml", "json"] = Query("yaml")
):
    """OpenAPI generado por la aplicación; YAML por defecto, ?format=json para JSON."""
    schema = request.app.openapi()
    if format == "json":
        return JSONResponse(schema)

    return Response(
        content=yaml.safe_dump(schema, sort_keys=False, allow_unicode=True),
        media_type="application/x-yaml",
        headers={"Content-Disposition": 'inline; filename="openapi.yaml"'},
    )


@docs_router.get("/docs", include_in_schema=False)
async def swagger_ui():
    return get_swagger_ui_html(
        openapi_url="/api/openapi?format=json",
        title="Whop SaaS API - Docs",
    )
