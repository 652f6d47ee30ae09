import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from arena.services.exchange import ExchangeError, JupiterExchange, Quote
from arena.api.dependencies import ArenaServices
from arena.core.config import Settings
from arena.services.ledger import LedgerError, SolanaRpcClient, TransactionFailed, UnconfirmedTransaction
from arena.services.signer import RemoteSigner, SignerError
from arena.services.treasury import InsufficientTreasuryBalance, Treasury
from tests.helpers import run, wallet

RPC_URL = "https://rpc.test"


def _rpc_client(results, sleep=None):
    """RPC client whose transport answers each method from `results`."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        calls.append(body)
        result = results[body["method"]]
        if callable(result):
            result = result(body)
        if isinstance(result, dict) and "error" in result:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": result["error"]})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = SolanaRpcClient(RPC_URL, http_client=http, sleep=sleep or AsyncMock())
    return client, calls


class TestSolanaRpcClient:

    def test_balance_in_sol(self):
        client, calls = _rpc_client({"getBalance": {"value": 1_500_000_000}})
        assert run(client.get_balance(wallet("A"))) == 1.5
        assert calls[0]["params"][0] == wallet("A")

    def test_rpc_error_raises(self):
        client, _ = _rpc_client({"getBalance": {"error": {"code": -32602, "message": "Invalid param"}}})
        with pytest.raises(LedgerError):
            run(client.get_balance("bad"))

    def test_http_error_raises(self):
        def handler(request):
            return httpx.Response(503)

        client = SolanaRpcClient(RPC_URL, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        with pytest.raises(LedgerError):
            run(client.get_latest_blockhash())

    def test_find_token_account(self):
        client, _ = _rpc_client({"getTokenAccountsByOwner": {"value": [{"pubkey": "Ata111"}]}})
        assert run(client.find_token_account(wallet("A"), "Mint")) == "Ata111"

        client, _ = _rpc_client({"getTokenAccountsByOwner": {"value": []}})
        assert run(client.find_token_account(wallet("A"), "Mint")) is None

    def test_token_decimals_default_when_unreadable(self):
        client, _ = _rpc_client({"getAccountInfo": {"value": None}})
        assert run(client.get_token_decimals("Mint")) == 6

        parsed = {"value": {"data": {"parsed": {"info": {"decimals": 9}}}}}
        client, _ = _rpc_client({"getAccountInfo": parsed})
        assert run(client.get_token_decimals("Mint")) == 9

    def test_confirm_polls_until_confirmed(self):
        statuses = iter([
            {"value": [None]},
            {"value": [{"confirmationStatus": "processed", "err": None}]},
            {"value": [{"confirmationStatus": "confirmed", "err": None}]},
        ])
        sleep = AsyncMock()
        client, calls = _rpc_client({"getSignatureStatuses": lambda body: next(statuses)}, sleep=sleep)
        run(client.confirm_transaction("sig", poll_interval=1.0))
        assert len(calls) == 3
        assert sleep.await_count == 2

    def test_confirm_raises_on_failed_transaction(self):
        failed = {"value": [{"confirmationStatus": "confirmed", "err": {"InstructionError": [0, 1]}}]}
        client, _ = _rpc_client({"getSignatureStatuses": failed})
        with pytest.raises(TransactionFailed):
            run(client.confirm_transaction("sig"))

    def test_confirm_times_out(self):
        client, _ = _rpc_client({"getSignatureStatuses": {"value": [None]}})
        with pytest.raises(LedgerError):
            run(client.confirm_transaction("sig", timeout_sec=3, poll_interval=1.0))


class TestJupiterExchange:

    def test_quote_parsing(self):
        def handler(request):
            assert request.url.path.endswith("/quote")
            assert request.url.params["slippageBps"] == "300"
            return httpx.Response(200, json={"inAmount": "50000000", "outAmount": "123456789", "priceImpactPct": "0.01"})

        exchange = JupiterExchange("https://jup.test/v6", http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        quote = run(exchange.get_quote("SolMint", "BallMint", 50_000_000, 300))
        assert quote.out_amount == 123456789
        assert quote.in_amount == 50_000_000
        assert quote.price_impact_pct == pytest.approx(0.01)

    def test_quote_without_route_raises(self):
        def handler(request):
            return httpx.Response(200, json={"error": "No routes found"})

        exchange = JupiterExchange("https://jup.test/v6", http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        with pytest.raises(ExchangeError):
            run(exchange.get_quote("SolMint", "BallMint", 1, 300))

    def test_swap_request_targets_destination_account(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"swapTransaction": "dHg="})

        exchange = JupiterExchange("https://jup.test/v6", http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        quote = Quote(input_mint="SolMint", output_mint="BallMint", in_amount=1, out_amount=2, raw={"outAmount": "2"})
        assert run(exchange.build_swap_transaction(quote, "TreasuryKey", "WinnerAta")) == "dHg="
        assert seen["destinationTokenAccount"] == "WinnerAta"
        assert seen["userPublicKey"] == "TreasuryKey"
        assert seen["quoteResponse"] == {"outAmount": "2"}


class TestRemoteSigner:

    def test_signs_with_api_key(self):
        def handler(request):
            assert request.headers["Authorization"] == "Bearer secret"
            return httpx.Response(200, json={"transaction": "c2lnbmVk"})

        signer = RemoteSigner("https://signer.test/", "secret", http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        assert run(signer.sign("dW5zaWduZWQ=")) == "c2lnbmVk"

    def test_missing_transaction_raises(self):
        def handler(request):
            return httpx.Response(200, json={})

        signer = RemoteSigner("https://signer.test", "secret", http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        with pytest.raises(SignerError):
            run(signer.build_sol_transfer(wallet("A"), 1000, "hash"))


class TestTreasury:

    def _treasury(self):
        ledger = MagicMock(spec=SolanaRpcClient)
        signer = MagicMock(spec=RemoteSigner)
        ledger.get_latest_blockhash.return_value = "hash"
        ledger.send_transaction.return_value = "sig"
        return Treasury("T" * 44, ledger, signer), ledger, signer

    def test_token_transfer_checks_balance_first(self):
        treasury, ledger, signer = self._treasury()
        ledger.find_token_account.return_value = "TreasuryAta"
        ledger.get_token_account_balance.return_value = 10
        with pytest.raises(InsufficientTreasuryBalance):
            run(treasury.transfer_tokens("Mint", wallet("A"), 11))
        signer.build_token_transfer.assert_not_called()

    def test_token_transfer_submits_and_confirms(self):
        treasury, ledger, signer = self._treasury()
        ledger.find_token_account.return_value = "TreasuryAta"
        ledger.get_token_account_balance.return_value = 100
        signer.build_token_transfer.return_value = "signed"
        assert run(treasury.transfer_tokens("Mint", wallet("A"), 40)) == "sig"
        signer.build_token_transfer.assert_awaited_once_with("Mint", wallet("A"), 40, "hash")
        ledger.confirm_transaction.assert_awaited_once_with("sig")

    def test_sol_transfer_in_lamports(self):
        treasury, ledger, signer = self._treasury()
        ledger.get_balance.return_value = 1.0
        signer.build_sol_transfer.return_value = "signed"
        assert run(treasury.transfer_sol(wallet("A"), 0.0095)) == "sig"
        signer.build_sol_transfer.assert_awaited_once_with(wallet("A"), 9_500_000, "hash")

    def test_unconfirmed_submit_keeps_signature(self):
        treasury, ledger, signer = self._treasury()
        ledger.confirm_transaction.side_effect = LedgerError("Transaction sig not confirmed after 60s")
        with pytest.raises(UnconfirmedTransaction) as excinfo:
            run(treasury.submit("signed"))
        assert excinfo.value.signature == "sig"

    def test_rejected_transaction_is_not_unconfirmed(self):
        treasury, ledger, signer = self._treasury()
        ledger.confirm_transaction.side_effect = TransactionFailed("Transaction sig failed")
        with pytest.raises(TransactionFailed) as excinfo:
            run(treasury.submit("signed"))
        assert not isinstance(excinfo.value, UnconfirmedTransaction)


class TestClientShutdown:

    def test_shared_client_left_open(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})))
        for client in (
            SolanaRpcClient(RPC_URL, http_client=http),
            JupiterExchange("https://quote.test", http_client=http),
            RemoteSigner("https://signer.test", "secret", http_client=http),
        ):
            run(client.aclose())
        assert not http.is_closed

    def test_own_client_closed(self):
        exchange = JupiterExchange("https://quote.test")
        run(exchange.aclose())
        assert exchange._client.is_closed

    def test_services_close_shared_client(self, store):
        services = ArenaServices(Settings(), session_factory=store.session_factory)
        run(services.aclose())
        assert services.http.is_closed
