"""JSON-RPC log source for the LendingPool: historical log queries, polling subscriptions, eth_call."""

import logging
import threading
import uuid
from typing import Any, Callable, Sequence

import eth_abi.abi
import httpx
import tenacity
from apscheduler.schedulers.base import BaseScheduler
from hexbytes import HexBytes

from services.indexer.src.indexer.adapters.lending_pool.abi import function_selector
from services.indexer.src.indexer.domain.models import RawLog

logger = logging.getLogger(__name__)

OnLogs = Callable[[list[RawLog]], None]
OnError = Callable[[Exception], None]

# Errors worth retrying: connection problems, timeouts, 429/5xx from the node
RETRYABLE_ERRORS = (httpx.TransportError, httpx.HTTPStatusError)


class RpcError(RuntimeError):
    """Raised when the node answers with a JSON-RPC error object."""

    def __init__(self, method: str, error: dict[str, Any]):
        self.method = method
        self.code = error.get("code")
        self.message = error.get("message", "")
        super().__init__(f"{method} failed ({self.code}): {self.message}")


class LogSubscription:
    """Handle for a live log subscription. unsubscribe() is idempotent."""

    def __init__(self, cancel: Callable[[], None]):
        self._cancel = cancel
        self._lock = threading.Lock()
        self.active = True

    def unsubscribe(self) -> None:
        with self._lock:
            if not self.active:
                return
            self.active = False
        self._cancel()


class RpcLogSource:
    def __init__(
        self,
        rpc_url: str,
        scheduler: BaseScheduler | None = None,
        poll_interval_seconds: float = 4.0,
        timeout: float = 30.0,
        max_attempts: int = 3,
        max_block_range: int = 1000,
        transport: httpx.BaseTransport | None = None,
    ):
        self.rpc_url = rpc_url
        self.scheduler = scheduler
        self.poll_interval_seconds = poll_interval_seconds
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.max_block_range = max_block_range
        self.transport = transport

    def _request(self, method: str, params: list[Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": 1,
        }

        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            response = client.post(self.rpc_url, json=payload)
            response.raise_for_status()
            result = response.json()

        if "error" in result:
            raise RpcError(method, result["error"])
        return result.get("result")

    def _call(self, method: str, params: list[Any]) -> Any:
        """Send one JSON-RPC request, retrying transient failures with jittered backoff."""
        retrying = tenacity.Retrying(
            stop=tenacity.stop_after_attempt(self.max_attempts),
            wait=tenacity.wait_exponential_jitter(initial=0.5, max=10),
            retry=tenacity.retry_if_exception_type(RETRYABLE_ERRORS),
            before_sleep=lambda state: logger.warning(
                f"{method} attempt {state.attempt_number} failed: "
                f"{state.outcome.exception()}, retrying"
            ),
            reraise=True,
        )
        return retrying(self._request, method, params)

    def get_block_number(self) -> int:
        return int(self._call("eth_blockNumber", []), 16)

    def get_logs(self, address: str, from_block: int, to_block: int) -> list[RawLog]:
        """
        Fetch all logs emitted by `address` in [from_block, to_block].

        Returns:
            Logs sorted by (block_number, log_index)
        """
        result = self._call(
            "eth_getLogs",
            [
                {
                    "address": address,
                    "fromBlock": hex(from_block),
                    "toBlock": hex(to_block),
                }
            ],
        )
        logs = [RawLog.from_rpc(raw) for raw in result or [] if not raw.get("removed")]
        return sorted(logs, key=lambda log: log.sort_key)

    def read_contract(
        self,
        address: str,
        function_signature: str,
        args: Sequence[Any],
        arg_types: Sequence[str],
        return_types: Sequence[str],
    ) -> tuple[Any, ...]:
        """eth_call a view function and decode its return values."""
        calldata = function_selector(function_signature) + eth_abi.abi.encode(
            list(arg_types), list(args)
        )
        result = self._call(
            "eth_call",
            [{"to": address, "data": "0x" + calldata.hex()}, "latest"],
        )
        return eth_abi.abi.decode(list(return_types), HexBytes(result))

    def watch_logs(
        self,
        address: str,
        on_logs: OnLogs,
        on_error: OnError,
        from_block: int | None = None,
    ) -> LogSubscription:
        """
        Poll for new logs from `address` and deliver them in block order.

        Each poll covers at most `max_block_range` blocks starting at the next unseen block.
        A failing poll is reported to `on_error` and the same range is retried next time.

        Args:
            address: Contract address to watch
            on_logs: Called with each non-empty, sorted batch
            on_error: Called with any exception raised while polling or delivering
            from_block: First block to deliver (default: the block after the current head)

        Returns:
            A LogSubscription; unsubscribe() removes the polling job
        """
        if self.scheduler is None:
            raise RuntimeError("watch_logs requires a scheduler")

        state = {"next_block": from_block}

        def poll() -> None:
            try:
                head = self.get_block_number()
                if state["next_block"] is None:
                    state["next_block"] = head + 1
                    return
                if head < state["next_block"]:
                    return
                to_block = min(head, state["next_block"] + self.max_block_range - 1)
                logs = self.get_logs(address, state["next_block"], to_block)
                if logs:
                    on_logs(logs)
                state["next_block"] = to_block + 1
            except Exception as e:
                on_error(e)

        job = self.scheduler.add_job(
            poll,
            "interval",
            seconds=self.poll_interval_seconds,
            id=f"watch-logs-{address.lower()}-{uuid.uuid4().hex[:8]}",
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Watching logs for {address} every {self.poll_interval_seconds}s")
        return LogSubscription(job.remove)


class MockLogSource(RpcLogSource):
    """In-memory log source for tests and local runs without a node."""

    def __init__(self, block_number: int = 0) -> None:
        super().__init__("http://mock")
        self.block_number = block_number
        self.logs: list[RawLog] = []
        self.contract_results: dict[str, tuple[Any, ...]] = {}
        self.subscriptions: list[tuple[LogSubscription, OnLogs, OnError]] = []
        self.call_history: list[tuple[str, dict[str, Any]]] = []
        self.fail_next: list[Exception] = []

    def set_block_number(self, block_number: int) -> None:
        self.block_number = block_number

    def add_logs(self, logs: Sequence[RawLog]) -> None:
        self.logs.extend(logs)

    def set_contract_result(self, function_signature: str, result: tuple[Any, ...]) -> None:
        self.contract_results[function_signature] = result

    def _maybe_fail(self) -> None:
        if self.fail_next:
            raise self.fail_next.pop(0)

    def get_block_number(self) -> int:
        self.call_history.append(("get_block_number", {}))
        self._maybe_fail()
        return self.block_number

    def get_logs(self, address: str, from_block: int, to_block: int) -> list[RawLog]:
        self.call_history.append(
            ("get_logs", {"address": address, "from": from_block, "to": to_block})
        )
        self._maybe_fail()
        logs = [
            log
            for log in self.logs
            if from_block <= log.block_number <= to_block
            and log.contract_address == address.lower()
        ]
        return sorted(logs, key=lambda log: log.sort_key)

    def read_contract(
        self,
        address: str,
        function_signature: str,
        args: Sequence[Any],
        arg_types: Sequence[str],
        return_types: Sequence[str],
    ) -> tuple[Any, ...]:
        self.call_history.append(
            ("read_contract", {"address": address, "function": function_signature, "args": list(args)})
        )
        self._maybe_fail()
        return self.contract_results[function_signature]

    def watch_logs(
        self,
        address: str,
        on_logs: OnLogs,
        on_error: OnError,
        from_block: int | None = None,
    ) -> LogSubscription:
        self.call_history.append(("watch_logs", {"address": address, "from": from_block}))

        def cancel() -> None:
            self.subscriptions = [s for s in self.subscriptions if s[0] is not subscription]

        subscription = LogSubscription(cancel)
        self.subscriptions.append((subscription, on_logs, on_error))
        return subscription

    def emit(self, logs: Sequence[RawLog]) -> None:
        """Deliver one notification batch to every active subscriber."""
        for _, on_logs, _ in list(self.subscriptions):
            on_logs(list(logs))

    def emit_error(self, error: Exception) -> None:
        for _, _, on_error in list(self.subscriptions):
            on_error(error)
