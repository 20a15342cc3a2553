"""
FastAPI 应用主入口

负责：
1. 创建 FastAPI 应用实例
2. 配置日志、Sentry、CORS
3. 注册全局异常处理器（统一 {"code", "message", "data"} 响应）
4. 注册 API 路由

运行方式：
    uvicorn fulfillment.main:app --reload
    fastapi dev fulfillment/main.py
"""
import logging
from typing import Any

import sentry_sdk
from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute

from fulfillment.api.errors import AppError
from fulfillment.api.main import api_router
from fulfillment.core.config import settings

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def custom_generate_unique_id(route: APIRoute) -> str:
    """
    自定义 OpenAPI 操作 ID：{tag}-{route_name}

    示例：
        "orders-create_order"
    """
    return f"{route.tags[0]}-{route.name}"


if settings.SENTRY_DSN and settings.ENVIRONMENT != "local":  # pragma: no cover
    sentry_sdk.init(dsn=str(settings.SENTRY_DSN), enable_tracing=True)

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    generate_unique_id_function=custom_generate_unique_id,
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """
    业务异常处理器

    4xx 记为 info，网关错误（5xx）记为 warning。
    """
    level = logging.WARNING if exc.status_code >= 500 else logging.INFO
    logger.log(level, f"{request.method} {request.url.path} -> {exc.code} {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": exc.code, "message": exc.message, "data": None},
    )


@app.exception_handler(HTTPException)
async def http_error_handler(_: Request, exc: HTTPException) -> JSONResponse:
    """
    HTTP 异常处理器

    detail 为 {"code", "message"} 字典时直接使用，否则错误码为 状态码 * 1000。
    """
    payload: dict[str, Any]
    if isinstance(exc.detail, dict) and {"code", "message"} <= set(exc.detail.keys()):
        payload = {"code": exc.detail.get("code"), "message": exc.detail.get("message")}
    else:
        payload = {"code": exc.status_code * 1000, "message": str(exc.detail)}
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": payload["code"], "message": payload["message"], "data": None},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    """请求字段校验错误（类型错误、必填字段缺失等）"""
    return JSONResponse(
        status_code=422,
        content={
            "code": 422000,
            "message": "Validation error",
            "data": {"errors": jsonable_errors(exc)},
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    # ctx 中可能包含异常对象；非 JSON 请求体的 input 是原始字节
    errors = []
    for error in exc.errors():
        item = {k: v for k, v in error.items() if k != "ctx"}
        if "ctx" in error:
            item["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        if isinstance(item.get("input"), bytes):
            item["input"] = item["input"].decode("utf-8", errors="replace")
        errors.append(item)
    return jsonable_encoder(errors)


if settings.all_cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.all_cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(api_router, prefix=settings.API_V1_STR)
