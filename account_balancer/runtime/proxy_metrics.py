from __future__ import annotations

from account_balancer.runtime.bounded_maps import BoundedCounterMap


class ProxyMetricsAccumulator:
    def __init__(
        self,
        *,
        account_dimension_max_keys: int = 1024,
        error_type_max_keys: int = 256,
    ) -> None:
        max_account_keys = max(1, int(account_dimension_max_keys))
        max_error_type_keys = max(1, int(error_type_max_keys))

        self._proxy_requests_total = 0
        self._proxy_failovers_total = 0
        self._proxy_exhausted_total = 0
        self._proxy_body_not_replayable_total = 0
        self._proxy_stream_interruptions_total = 0
        self._proxy_client_disconnects_total = 0
        self._proxy_connect_latency_sum_ms = 0.0
        self._proxy_connect_latency_count = 0

        self._proxy_attempts_by_account: BoundedCounterMap[str] = BoundedCounterMap(
            max_keys=max_account_keys
        )
        self._proxy_failovers_by_account: BoundedCounterMap[tuple[str, str]] = (
            BoundedCounterMap(max_keys=max_account_keys)
        )
        self._proxy_errors_by_type: BoundedCounterMap[str] = BoundedCounterMap(
            max_keys=max_error_type_keys
        )
        self._proxy_responses_by_status_class: BoundedCounterMap[str] = (
            BoundedCounterMap(max_keys=16)
        )

    @property
    def proxy_requests_total(self) -> int:
        return self._proxy_requests_total

    @property
    def proxy_failovers_total(self) -> int:
        return self._proxy_failovers_total

    @property
    def proxy_exhausted_total(self) -> int:
        return self._proxy_exhausted_total

    @property
    def proxy_body_not_replayable_total(self) -> int:
        return self._proxy_body_not_replayable_total

    @property
    def proxy_stream_interruptions_total(self) -> int:
        return self._proxy_stream_interruptions_total

    @property
    def proxy_client_disconnects_total(self) -> int:
        return self._proxy_client_disconnects_total

    @property
    def proxy_connect_latency_sum_ms(self) -> float:
        return self._proxy_connect_latency_sum_ms

    @property
    def proxy_connect_latency_count(self) -> int:
        return self._proxy_connect_latency_count

    @property
    def proxy_attempts_by_account(self) -> dict[str, int]:
        return self._proxy_attempts_by_account.to_dict()

    @property
    def proxy_failovers_by_account(self) -> dict[tuple[str, str], int]:
        return self._proxy_failovers_by_account.to_dict()

    @property
    def proxy_errors_by_type(self) -> dict[str, int]:
        return self._proxy_errors_by_type.to_dict()

    @property
    def proxy_responses_by_status_class(self) -> dict[str, int]:
        return self._proxy_responses_by_status_class.to_dict()

    def record_request(self) -> None:
        self._proxy_requests_total += 1

    def record_attempt(self, account_id: str) -> None:
        self._proxy_attempts_by_account.increment(account_id)

    def record_connect(self, connect_ms: float) -> None:
        self._proxy_connect_latency_sum_ms += max(0.0, connect_ms)
        self._proxy_connect_latency_count += 1

    def record_failover(self, *, account_id: str, kind: str, error_type: str) -> None:
        self._proxy_failovers_total += 1
        self._proxy_failovers_by_account.increment((account_id, kind))
        self._proxy_errors_by_type.increment(error_type)

    def record_response(self, status: int) -> None:
        self._proxy_responses_by_status_class.increment(f"{max(0, status) // 100}xx")

    def record_exhausted(self) -> None:
        self._proxy_exhausted_total += 1

    def record_body_not_replayable(self) -> None:
        self._proxy_body_not_replayable_total += 1

    def record_stream_interrupted(self, error_type: str) -> None:
        self._proxy_stream_interruptions_total += 1
        self._proxy_errors_by_type.increment(error_type)

    def record_client_disconnect(self) -> None:
        self._proxy_client_disconnects_total += 1
