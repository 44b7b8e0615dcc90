from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict

from dca_executor.core.request_spec import RequestSpec


@dataclass(frozen=True)
class RestStoreRequestFactory:
    """PostgREST request builders for the enrollment and execution tables."""

    base_url: str
    service_key: str = ""
    rest_path: str = "/rest/v1"

    def _headers(self, prefer: str = "return=representation") -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Prefer": prefer}
        if self.service_key:
            headers["apikey"] = self.service_key
            headers["Authorization"] = f"Bearer {self.service_key}"
        return headers

    def _spec(self, method: str, table: str, query: Dict[str, Any], json: Any = None) -> RequestSpec:
        return RequestSpec(
            method=method,
            base_url=self.base_url,
            path=f"{self.rest_path}/{table}",
            query=query,
            headers=self._headers(),
            json=json,
        )

    def build_active_delegations(self, now: datetime) -> RequestSpec:
        return self._spec("GET", "delegations", {"select": "*", "expires_at": f"gt.{now.isoformat()}"})

    def build_activity_probe(self, table: str, since: datetime) -> RequestSpec:
        return self._spec("GET", table, {"select": "id", "created_at": f"gte.{since.isoformat()}", "limit": 1})

    def build_insert(self, table: str, record: Dict[str, Any]) -> RequestSpec:
        return self._spec("POST", table, {}, json=record)

    def build_history(self, user_address: str, limit: int) -> RequestSpec:
        query = {
            "select": "action,amount_in,amount_out,fear_greed_index,status,error_message,tx_hash,created_at",
            "user_address": f"ilike.{user_address}",
            "order": "created_at.desc",
            "limit": int(limit),
        }
        return self._spec("GET", "dca_executions", query)

    def build_increment_stats(self, volume: str, fees: str) -> RequestSpec:
        return RequestSpec(
            method="POST",
            base_url=self.base_url,
            path=f"{self.rest_path}/rpc/increment_protocol_stats",
            query={},
            headers=self._headers(prefer="return=minimal"),
            json={"volume_delta": volume, "fees_delta": fees},
        )


__all__ = ["RestStoreRequestFactory"]
