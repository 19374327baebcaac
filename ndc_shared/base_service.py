"""
Base service class for NDC gateway HTTP services.
"""

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST
from typing import Dict, Optional
import time
import os

from ndc_shared.config import GatewaySettings, get_settings
from ndc_shared.logging import configure_logging, get_logger
from ndc_shared.metrics import MetricsCollector, get_metrics_collector
from ndc_shared.errors import NdcGatewayException, http_status_for


class BaseService:
    """Base service class with common functionality."""

    def __init__(self, service_name: str, port: int,
                 settings: Optional[GatewaySettings] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.service_name = service_name
        self.port = port
        self.host = "0.0.0.0"
        self.config = settings or get_settings(service_name=service_name)
        self.logger = get_logger(service_name)
        self.metrics = metrics or get_metrics_collector(service_name)
        self._start_time = time.time()

        configure_logging(service_name, self.config.log_level)

        self.app = self._create_app()
        self._setup_middleware()
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""
        return FastAPI(
            title=f"{self.service_name.upper()} Gateway Service",
            description="NDC distribution gateway",
            version="1.0.0",
            docs_url="/docs" if self.config.env == "local" else None,
            redoc_url="/redoc" if self.config.env == "local" else None,
        )

    def _setup_middleware(self):
        """Set up middleware."""

        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"] if self.config.env == "local" else [],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @self.app.middleware("http")
        async def add_request_timing(request: Request, call_next):
            start_time = time.time()
            response = await call_next(request)
            duration = time.time() - start_time

            self.logger.info(
                "HTTP request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2)
            )
            return response

    def _setup_routes(self):
        """Set up common routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            dependencies = await self._check_dependencies()
            degraded = any(status != "ok" for status in dependencies.values())
            return JSONResponse(
                status_code=200,
                content={
                    "service": self.service_name,
                    "status": "degraded" if degraded else "ok",
                    "uptime_seconds": self._get_uptime(),
                    "dependencies": dependencies,
                    "version": "1.0.0",
                    "commit": os.getenv("GIT_COMMIT", "unknown")
                }
            )

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            return Response(content=self.metrics.render(), media_type=CONTENT_TYPE_LATEST)

        @self.app.exception_handler(NdcGatewayException)
        async def gateway_exception_handler(request: Request, exc: NdcGatewayException):
            """Handle NdcGatewayException."""
            self.logger.error(
                "Gateway error",
                code=exc.code,
                message=exc.message,
                details=exc.details
            )
            return JSONResponse(
                status_code=http_status_for(exc.code),
                content=exc.to_response().model_dump(mode="json")
            )

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            """Handle general exceptions."""
            self.logger.error("Unhandled exception", error=str(exc), exc_info=True)
            return JSONResponse(
                status_code=500,
                content={
                    "code": "INTERNAL_ERROR",
                    "message": "Internal server error",
                    "details": {}
                }
            )

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check service dependencies. Override in subclasses."""
        return {}

    def _get_uptime(self) -> float:
        """Get service uptime in seconds."""
        return time.time() - self._start_time

    def run(self):
        """Run the service."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.config.log_level.lower()
        )
