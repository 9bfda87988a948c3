"""
Main FastAPI application entry point.

This module builds the settlement components from configuration, registers
the multichain API router, error handlers, middleware and the health check.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Load environment variables from .env file
load_dotenv()

from settlement.api import SettlementServices, router as multichain_router
from settlement.chains.providers import RpcClientManager
from settlement.chains.registry import NetworkRegistry
from settlement.config import SettlementConfig, load_config
from settlement.errors import SettlementError, ValidationError
from settlement.payment.verifier import PaymentVerifier
from settlement.pricing.oracle import PriceOracle
from settlement.purchase.orchestrator import PurchaseOrchestrator
from settlement.store.database import DatabaseSessionManager
from settlement.store.sold_state import SoldStateStore
from settlement.transfer.service import AssetTransferService

logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"
SERVICE_NAME = "settlement-api"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def build_services(config: SettlementConfig) -> SettlementServices:
    """Create every component once; routes receive them through app.state."""
    registry = NetworkRegistry.from_config(config)
    clients = RpcClientManager.from_descriptors(
        registry.list_networks(), timeout=config.rpc_read_timeout_seconds
    )
    oracle = PriceOracle(
        feed_url=config.price_feed_url,
        cache_ttl=config.price_cache_ttl_seconds,
        timeout=config.price_feed_timeout_seconds,
    )
    verifier = PaymentVerifier(
        registry,
        clients,
        tolerance=config.payment_tolerance,
        min_confirmations=config.min_confirmations,
        read_timeout=config.rpc_read_timeout_seconds,
    )
    db = DatabaseSessionManager(config.database_url)
    store = SoldStateStore(db)

    transfer = None
    if config.custody_enabled:
        network = registry.get_network(config.settlement_network)
        transfer = AssetTransferService(
            clients.get(network.id),
            network,
            contract_address=config.nft_contract_address,
            private_key=config.private_key,
            expected_holder=config.server_wallet_address or None,
            read_timeout=config.rpc_read_timeout_seconds,
            confirmation_timeout=config.confirmation_timeout_seconds,
        )
    else:
        logger.warning("Custody disabled: set NFT_CONTRACT_ADDRESS and PRIVATE_KEY to enable purchases")

    for network in registry.list_networks():
        if not network.receiving_wallet:
            logger.warning(f"No receiving wallet for {network.name}: payments on it will be rejected")

    orchestrator = PurchaseOrchestrator(registry, oracle, verifier, store, transfer)
    return SettlementServices(
        config=config,
        registry=registry,
        clients=clients,
        oracle=oracle,
        verifier=verifier,
        db=db,
        store=store,
        orchestrator=orchestrator,
        transfer=transfer,
    )


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(SettlementError)
    async def settlement_error_handler(request: Request, exc: SettlementError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
        return JSONResponse(status_code=exc.http_status, content=exc.to_response())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
        error = ValidationError("Invalid request body", details={"fields": fields})
        return JSONResponse(status_code=error.http_status, content=error.to_response())


def create_app(
    config: Optional[SettlementConfig] = None,
    services: Optional[SettlementServices] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Configuration; loaded from the environment when omitted
        services: Prebuilt components (tests); built at startup when omitted

    Returns:
        Configured FastAPI application instance
    """
    if services is not None:
        config = services.config
    elif config is None:
        config = load_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            yield
            return
        built = build_services(config)
        await built.store.create_schema()
        status = await built.clients.get_status(built.registry.list_networks())
        for network_id, ok in status.items():
            if not ok:
                logger.warning(f"{network_id} RPC is unreachable or on the wrong chain")
        app.state.services = built
        logger.info(f"Settlement service ready (settlement network: {config.settlement_network})")
        try:
            yield
        finally:
            await built.aclose()

    app = FastAPI(
        title="Settlement API",
        description="Cross-network collectible purchase settlement",
        version=API_VERSION,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in config.cors_origins.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    @app.get("/health")
    async def health_check(request: Request) -> JSONResponse:
        """Health check endpoint for monitoring and load balancers."""
        current: Optional[SettlementServices] = getattr(request.app.state, "services", None)
        database_ok = await current.db.health_check() if current else False
        return JSONResponse(
            status_code=200 if database_ok else 503,
            content={
                "status": "healthy" if database_ok else "degraded",
                "service": SERVICE_NAME,
                "version": API_VERSION,
                "database": database_ok,
                "custody": bool(current and current.transfer is not None),
            },
        )

    app.include_router(multichain_router)
    return app


def main() -> None:
    import uvicorn

    config = load_config()
    configure_logging(config.log_level)
    uvicorn.run(create_app(config), host="0.0.0.0", port=config.port)


if __name__ == "__main__":
    main()
