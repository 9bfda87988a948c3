"""Shared fixtures: registry, oracle, store and a wired orchestrator over fakes."""

import httpx
import pytest

from fakes import ADMIN_WALLET, CUSTODY_ADDRESS, CUSTODY_KEY, NFT_CONTRACT, FakeNFTContract, FakeW3, price_feed
from settlement.chains.providers import RpcClientManager
from settlement.chains.registry import NetworkId, NetworkRegistry
from settlement.config import SettlementConfig
from settlement.payment.verifier import PaymentVerifier
from settlement.pricing.oracle import PriceOracle
from settlement.purchase.orchestrator import PurchaseOrchestrator
from settlement.store.database import DatabaseSessionManager
from settlement.store.sold_state import SoldStateStore
from settlement.transfer.service import AssetTransferService

# CoinGecko ids -> USD used across tests
PRICES = {"weth": 2300, "ethereum": 2300, "pol-polygon": 0.13, "usd-coin": 1, "tether": 1}


@pytest.fixture
def config(tmp_path):
    return SettlementConfig(
        _env_file=None,
        admin_address=ADMIN_WALLET,
        nft_contract_address=NFT_CONTRACT,
        private_key=CUSTODY_KEY,
        server_wallet_address=CUSTODY_ADDRESS,
        database_url=f"sqlite+aiosqlite:///{tmp_path}/settlement-test.db",
    )


@pytest.fixture
def registry(config):
    return NetworkRegistry.from_config(config)


@pytest.fixture
def nft():
    return FakeNFTContract(owners={7: CUSTODY_ADDRESS, 8: CUSTODY_ADDRESS, 9: CUSTODY_ADDRESS})


@pytest.fixture
def polygon(nft):
    return FakeW3(contract=nft)


@pytest.fixture
def ethereum():
    return FakeW3()


@pytest.fixture
def clients(polygon, ethereum):
    return RpcClientManager({NetworkId.POLYGON: polygon, NetworkId.ETHEREUM: ethereum}, timeout=2.0)


@pytest.fixture
async def oracle():
    client = httpx.AsyncClient(transport=price_feed(PRICES))
    yield PriceOracle(http_client=client)
    await client.aclose()


@pytest.fixture
def verifier(registry, clients):
    return PaymentVerifier(registry, clients)


@pytest.fixture
async def db(config):
    manager = DatabaseSessionManager(config.database_url)
    await manager.create_schema()
    yield manager
    await manager.dispose()


@pytest.fixture
def store(db):
    return SoldStateStore(db)


@pytest.fixture
def transfer(registry, clients):
    network = registry.get_network("polygon")
    return AssetTransferService(
        clients.get(NetworkId.POLYGON),
        network,
        contract_address=NFT_CONTRACT,
        private_key=CUSTODY_KEY,
        expected_holder=CUSTODY_ADDRESS,
        read_timeout=2.0,
        confirmation_timeout=0.2,
    )


@pytest.fixture
def orchestrator(registry, oracle, verifier, store, transfer):
    return PurchaseOrchestrator(registry, oracle, verifier, store, transfer)
