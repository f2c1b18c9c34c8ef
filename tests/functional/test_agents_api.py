"""
Functional tests for the HTTP API.
"""
import json
import time
import uuid

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from fastapi.testclient import TestClient
from web3 import Web3

from api import auth as api_auth
from api import main as api_main
from api.auth import SIGNATURE_HEADER, signing_message
from api.main import app
from vault.chain import Chain
from vault.config import ETHER
from tests.conftest import DEPLOYER_KEY, EXECUTOR_KEY, GENESIS, OWNER_KEY, STRANGER_KEY

client = TestClient(app)

DEPLOYER = Account.from_key(DEPLOYER_KEY)
EXECUTOR = Account.from_key(EXECUTOR_KEY)
OWNER = Account.from_key(OWNER_KEY)
STRANGER = Account.from_key(STRANGER_KEY)


def sign(method, path, account, body):
    message = encode_defunct(text=signing_message(method, path, body.encode("utf-8")))
    return Web3.to_hex(account.sign_message(message).signature)


def signed(method, path, account, **fields):
    """Send a request whose body is signed by `account`."""
    payload = {"sender": account.address, "issued_at": int(time.time()), "nonce": uuid.uuid4().hex, **fields}
    body = json.dumps(payload)
    return client.request(
        method,
        path,
        content=body,
        headers={"Content-Type": "application/json", SIGNATURE_HEADER: sign(method, path, account, body)},
    )


def trade(address, account=EXECUTOR, amount=ETHER // 20, market="NIGERIA_ELECTION_2027", direction="BUY"):
    return signed(
        "POST", f"/api/agents/{address}/trades", account, market=market, amount=amount, direction=direction
    )


@pytest.fixture
def api_settings(vault_settings):
    return vault_settings.model_copy(
        update={"deployer_private_key": DEPLOYER_KEY, "executor_private_key": EXECUTOR_KEY}
    )


@pytest.fixture
def api_deployment(api_settings):
    """Serve a fresh deployment on a frozen-clock chain."""
    deployment = api_main.state.reset(api_settings, Chain(genesis_timestamp=GENESIS))
    api_main.rate_limit_storage.clear()
    api_auth.used_signatures.clear()
    return deployment


@pytest.fixture
def funded_owner(api_deployment):
    response = client.post("/api/dev/faucet", json={"address": OWNER.address, "amount": 5 * ETHER})
    assert response.status_code == 200
    return OWNER.address


def create_agent(account=OWNER, markets=("NIGERIA_ELECTION_2027",), name="", deposit=ETHER):
    response = signed("POST", "/api/agents", account, markets=list(markets), risk_profile="MODERATE", name=name)
    assert response.status_code == 201
    address = response.json()["address"]
    funded = signed("POST", f"/api/agents/{address}/deposit", account, amount=deposit)
    assert funded.status_code == 200
    return address


@pytest.fixture
def agent_address(funded_owner):
    return create_agent()


class TestReadPaths:
    """Health, markets and contracts."""

    def test_health(self, api_deployment):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["block_number"] == api_deployment.chain.block_number
        assert body["global_trading_paused"] is False
        assert "X-Request-ID" in response.headers

    def test_contracts(self, api_deployment):
        summary = client.get("/api/contracts").json()
        assert summary == api_deployment.summary()
        assert summary["executor"] == EXECUTOR.address

    def test_markets(self, api_deployment):
        body = client.get("/api/markets").json()
        assert body["count"] == 4
        assert {market["region"] for market in body["markets"]} >= {"Nigeria", "Kenya"}

    def test_market_detail_by_key_and_id(self, api_deployment):
        by_key = client.get("/api/markets/NIGERIA_ELECTION_2027").json()
        by_id = client.get(f"/api/markets/{api_deployment.markets['NIGERIA_ELECTION_2027']}").json()
        assert by_key == by_id
        assert by_key["yes_price"] == pytest.approx(0.5)

    def test_unknown_market(self, api_deployment):
        response = client.get("/api/markets/ATLANTIS_REFERENDUM")
        assert response.status_code == 404


class TestAuthentication:
    """State-changing requests must be signed by their sender."""

    def test_unsigned_admin_request_is_forbidden(self, api_deployment):
        response = client.post(
            "/api/admin/trading/pause",
            json={"sender": DEPLOYER.address, "issued_at": int(time.time())},
        )
        assert response.status_code == 403
        assert api_deployment.permission_manager.global_trading_paused is False

    def test_signature_from_another_account_is_forbidden(self, api_deployment):
        response = signed(
            "PUT",
            "/api/admin/constraints",
            STRANGER,
            sender=DEPLOYER.address,
            min_trade_size=1,
            max_trade_size=10**30,
            min_daily_loss_limit=1,
            max_daily_loss_limit=10**30,
        )
        assert response.status_code == 403
        assert client.get("/api/admin/constraints").json()["max_trade_size"] == ETHER

    def test_forged_executor_cannot_trade(self, api_deployment, agent_address):
        response = signed(
            "POST",
            f"/api/agents/{agent_address}/trades",
            OWNER,
            sender=EXECUTOR.address,
            market="NIGERIA_ELECTION_2027",
            amount=ETHER // 20,
        )
        assert response.status_code == 403
        assert client.get(f"/api/agents/{agent_address}/positions").json()["count"] == 0

    def test_tampered_body_is_forbidden(self, api_deployment, agent_address):
        path = f"/api/agents/{agent_address}/withdraw"
        signed_body = json.dumps({"sender": OWNER.address, "issued_at": int(time.time()), "amount": 1})
        sent_body = signed_body.replace('"amount": 1', '"amount": 1000000000000000000')
        response = client.post(
            path,
            content=sent_body,
            headers={"Content-Type": "application/json", SIGNATURE_HEADER: sign("POST", path, OWNER, signed_body)},
        )
        assert response.status_code == 403
        assert api_deployment.agent(agent_address).get_performance_metrics().current_balance == ETHER

    def test_replayed_request_is_forbidden(self, api_deployment, agent_address):
        path = f"/api/agents/{agent_address}/pause"
        body = json.dumps({"sender": OWNER.address, "issued_at": int(time.time())})
        headers = {"Content-Type": "application/json", SIGNATURE_HEADER: sign("POST", path, OWNER, body)}

        assert client.post(path, content=body, headers=headers).status_code == 200
        assert signed("POST", f"/api/agents/{agent_address}/unpause", OWNER).status_code == 200
        assert client.post(path, content=body, headers=headers).status_code == 403
        assert api_deployment.agent(agent_address).paused is False

    def test_expired_request_is_forbidden(self, api_deployment, agent_address):
        response = signed("POST", f"/api/agents/{agent_address}/pause", OWNER, issued_at=int(time.time()) - 3600)
        assert response.status_code == 403
        assert "expired" in response.json()["detail"]

    def test_malformed_signature_is_forbidden(self, api_deployment, agent_address):
        response = client.post(
            f"/api/agents/{agent_address}/pause",
            json={"sender": OWNER.address, "issued_at": int(time.time())},
            headers={SIGNATURE_HEADER: "0xdeadbeef"},
        )
        assert response.status_code == 403


class TestAgentLifecycle:
    """Create, fund, trade, close and withdraw through the API."""

    def test_create_agent(self, funded_owner, agent_address):
        body = client.get(f"/api/agents/{agent_address}").json()
        assert body["owner"] == funded_owner
        assert body["config"]["risk_profile"] == "MODERATE"
        assert body["metrics"]["current_balance"] == ETHER

        listed = client.get("/api/agents", params={"owner": funded_owner}).json()
        assert listed["count"] == 1
        assert listed["agents"][0]["address"] == agent_address

    def test_create_agent_requires_limits(self, funded_owner):
        response = signed("POST", "/api/agents", OWNER, markets=["NIGERIA_ELECTION_2027"])
        assert response.status_code == 400

    def test_trade_and_close(self, api_deployment, funded_owner, agent_address):
        opened = trade(agent_address)
        assert opened.status_code == 201
        position = opened.json()["position"]
        assert position["is_open"] is True
        assert position["direction"] == "BUY"

        closed = signed("POST", f"/api/agents/{agent_address}/positions/{position['id']}/close", EXECUTOR)
        assert closed.status_code == 200
        payout = closed.json()["payout"]
        assert closed.json()["position"]["is_open"] is False

        trades = client.get(f"/api/agents/{agent_address}/trades").json()
        assert trades["total"] == 1
        assert trades["trades"][0]["pnl"] == payout - ETHER // 20

        stats = client.get("/api/portfolio/stats", params={"owner": funded_owner}).json()
        assert stats["agent_count"] == 1
        assert stats["active_agents"] == 1
        assert stats["total_pnl"] == payout - ETHER // 20
        assert stats["total_pnl_percent"] == pytest.approx((payout - ETHER // 20) / ETHER * 100)

        open_positions = client.get(f"/api/agents/{agent_address}/positions", params={"status": "open"}).json()
        assert open_positions["count"] == 0

    def test_withdraw(self, api_deployment, funded_owner, agent_address):
        response = signed("POST", f"/api/agents/{agent_address}/withdraw", OWNER, amount=ETHER // 2)
        assert response.status_code == 200
        assert response.json()["available_balance"] == ETHER // 2

    def test_unknown_agent(self, api_deployment):
        assert client.get("/api/agents/0x0000000000000000000000000000000000000001").status_code == 404
        assert client.get("/api/agents/not-an-address").status_code == 404


class TestPortfolioTrades:
    """Owner-wide trade feed across agents."""

    def test_feed_spans_owner_agents(self, api_deployment, funded_owner):
        nigeria = create_agent(name="Naija Desk")
        kenya = create_agent(markets=("KENYA_SHILLING_Q2_2026",), name="Kenya FX")
        client.post("/api/dev/faucet", json={"address": STRANGER.address, "amount": ETHER})
        outsider = create_agent(account=STRANGER, deposit=ETHER // 2)

        assert trade(nigeria).status_code == 201
        assert trade(outsider).status_code == 201
        assert trade(kenya, market="KENYA_SHILLING_Q2_2026", direction="SELL").status_code == 201

        body = client.get("/api/portfolio/trades", params={"owner": funded_owner}).json()
        assert body["count"] == 2
        newest, oldest = body["trades"]
        assert (newest["agent"], newest["agent_name"]) == (kenya, "Kenya FX")
        assert newest["market_title"] == "Kenya Shilling above 150/USD by Q2 2026"
        assert newest["direction"] == "SELL"
        assert (oldest["agent"], oldest["agent_name"]) == (nigeria, "Naija Desk")
        assert oldest["market_title"] == "Nigerian Presidential Election 2027"

        limited = client.get("/api/portfolio/trades", params={"owner": funded_owner, "limit": 1}).json()
        assert [entry["agent"] for entry in limited["trades"]] == [kenya]

    def test_feed_rejects_bad_owner(self, api_deployment):
        assert client.get("/api/portfolio/trades", params={"owner": "nobody"}).status_code == 400


class TestErrorMapping:
    """Contract errors surface with category-specific status codes."""

    def test_non_executor_is_forbidden(self, agent_address):
        response = trade(agent_address, account=OWNER)
        assert response.status_code == 403
        body = response.json()
        assert body["error"] == "NotAuthorizedExecutor"
        assert body["category"] == "Authorization"
        assert body["detail"]

    def test_policy_violation(self, api_deployment, agent_address):
        response = trade(agent_address, amount=ETHER)
        assert response.status_code == 422
        assert response.json()["error"] == "ExceedsMaxTradeSize"

    def test_state_conflict(self, api_deployment, agent_address):
        response = signed("POST", f"/api/agents/{agent_address}/positions/42/close", EXECUTOR)
        assert response.status_code == 409
        assert response.json()["error"] == "PositionNotFound"

    def test_circuit_breaker(self, api_deployment, funded_owner, agent_address):
        assert signed("POST", f"/api/agents/{agent_address}/pause", OWNER).status_code == 200
        response = trade(agent_address)
        assert response.status_code == 423
        assert response.json()["error"] == "Paused"

        assert signed("POST", f"/api/agents/{agent_address}/unpause", OWNER).status_code == 200
        assert trade(agent_address).status_code == 201

    def test_invalid_sender_address(self, agent_address):
        response = signed("POST", f"/api/agents/{agent_address}/pause", OWNER, sender="0x1234")
        assert response.status_code == 422


class TestAdmin:
    """Protocol owner endpoints."""

    def test_global_pause(self, api_deployment, funded_owner, agent_address):
        assert signed("POST", "/api/admin/trading/pause", OWNER).status_code == 403

        assert signed("POST", "/api/admin/trading/pause", DEPLOYER).status_code == 200
        assert trade(agent_address).json()["error"] == "GlobalTradingPaused"
        assert signed("POST", "/api/admin/trading/pause", DEPLOYER).status_code == 423
        assert signed("POST", "/api/admin/trading/resume", DEPLOYER).status_code == 200

    def test_register_and_deactivate_market(self, api_deployment):
        response = signed(
            "POST", "/api/admin/markets", DEPLOYER, key="SENEGAL_ELECTION_2029", name="Senegal 2029", region="Senegal"
        )
        assert response.status_code == 201
        assert response.json()["is_active"] is True

        status = signed("POST", "/api/admin/markets/SENEGAL_ELECTION_2029/status", DEPLOYER, active=False)
        assert status.json()["is_active"] is False
        assert client.get("/api/markets", params={"active_only": True}).json()["count"] == 4

    def test_constraints(self, api_deployment):
        inverted = signed(
            "PUT",
            "/api/admin/constraints",
            DEPLOYER,
            min_trade_size=ETHER,
            max_trade_size=ETHER // 10,
            min_daily_loss_limit=ETHER // 100,
            max_daily_loss_limit=ETHER,
        )
        assert inverted.status_code == 422
        assert inverted.json()["error"] == "InvalidRange"
        assert client.get("/api/admin/constraints").json()["max_trade_size"] == ETHER

    def test_authorize_executor(self, api_deployment, funded_owner):
        response = signed("POST", "/api/admin/executors", DEPLOYER, executor=funded_owner, authorized=True)
        assert response.json() == {"executor": funded_owner, "authorized": True}


class TestFaucet:
    """Development faucet."""

    def test_faucet_limit(self, api_deployment):
        account = api_deployment.chain.create_account("greedy")
        response = client.post("/api/dev/faucet", json={"address": account, "amount": 11 * ETHER})
        assert response.status_code == 422
        assert api_deployment.chain.balance_of(account) == 0

    def test_faucet_rejects_bad_address(self, api_deployment):
        response = client.post("/api/dev/faucet", json={"address": "nowhere", "amount": 1})
        assert response.status_code == 400

    def test_idle_clients_are_evicted(self, api_deployment):
        buckets = api_main.rate_limit_storage.setdefault("faucet", {})
        buckets["203.0.113.7:/api/dev/faucet"] = [time.time() - 3600]
        buckets["203.0.113.8:/api/dev/faucet"] = []

        response = client.post("/api/dev/faucet", json={"address": OWNER.address, "amount": 1})
        assert response.status_code == 200
        assert list(api_main.rate_limit_storage["faucet"]) == ["testclient:/api/dev/faucet"]

    def test_rate_limit(self, api_deployment):
        for _ in range(20):
            assert client.post("/api/dev/faucet", json={"address": OWNER.address, "amount": 1}).status_code == 200
        assert client.post("/api/dev/faucet", json={"address": OWNER.address, "amount": 1}).status_code == 429
