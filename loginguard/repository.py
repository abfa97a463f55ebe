from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from loginguard.database import SupabaseStore
from loginguard.errors import DatabaseError
from loginguard.models import Account, GeoLocation, GeolocationProfile


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class _SupabaseRepository:
    def __init__(self, store: SupabaseStore) -> None:
        self.store = store

    @property
    def client(self):
        return self.store.client

    @staticmethod
    def _single_row(result: Any) -> dict[str, Any] | None:
        data = getattr(result, "data", None)
        if not data:
            return None
        if isinstance(data, list):
            return data[0] if data else None
        if isinstance(data, dict):
            return data
        return None

    @staticmethod
    def _rows(result: Any) -> list[dict[str, Any]]:
        data = getattr(result, "data", None)
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            return [data]
        return []


class AccountRepository(_SupabaseRepository):
    table_name = "users"

    def get_account_by_email(self, email: str) -> Account | None:
        try:
            result = (
                self.client.table(self.table_name)
                .select("*")
                .eq("email", email)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to load account by email: {exc}") from exc
        row = self._single_row(result)
        return Account.from_row(row) if row else None

    def get_account_by_id(self, user_id: str) -> Account | None:
        try:
            result = self.client.table(self.table_name).select("*").eq("id", user_id).limit(1).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to load account: {exc}") from exc
        row = self._single_row(result)
        return Account.from_row(row) if row else None

    def create_account(
        self,
        *,
        email: str,
        password_hash: str,
        mfa_secret: str | None,
        phone_number: str | None,
    ) -> Account:
        payload = {
            "email": email,
            "password_hash": password_hash,
            "mfa_secret": mfa_secret,
            "phone_number": phone_number,
            "failed_login_attempts": 0,
            "account_locked_until": None,
            "created_at": _utcnow_iso(),
        }
        try:
            result = self.client.table(self.table_name).insert(payload).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to create account: {exc}") from exc
        row = self._single_row(result)
        if not row:
            raise DatabaseError("Account creation returned no data.")
        return Account.from_row(row)

    def update_login_state(
        self,
        *,
        user_id: str,
        failed_login_attempts: int,
        account_locked_until: datetime | None,
        last_login_at: datetime | None = None,
    ) -> None:
        # Last writer wins when two requests for the same account race.
        updates: dict[str, Any] = {
            "failed_login_attempts": failed_login_attempts,
            "account_locked_until": _iso(account_locked_until),
        }
        if last_login_at is not None:
            updates["last_login_at"] = last_login_at.isoformat()
        try:
            self.client.table(self.table_name).update(updates).eq("id", user_id).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to update login state: {exc}") from exc


class SecurityEventRepository(_SupabaseRepository):
    """Login history, geolocation profiles, fraud flags and audit entries."""

    def insert_login_attempt(
        self,
        *,
        user_id: str | None,
        ip_address: str,
        user_agent: str | None,
        success: bool,
        location: GeoLocation,
        timestamp: datetime,
    ) -> None:
        payload = {
            "user_id": user_id,
            "ip_address": ip_address,
            "user_agent": user_agent,
            "success": success,
            "geolocation_data": location.snapshot(),
            "country_code": location.country_code,
            "city": location.city,
            "latitude": location.latitude,
            "longitude": location.longitude,
            "timestamp": timestamp.isoformat(),
        }
        try:
            self.client.table("login_attempts").insert(payload).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to record login attempt: {exc}") from exc

    def count_login_attempts(self, *, user_id: str, success: bool, since: datetime) -> int:
        try:
            result = (
                self.client.table("login_attempts")
                .select("id", count="exact")
                .eq("user_id", user_id)
                .eq("success", success)
                .gt("timestamp", since.isoformat())
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to count login attempts: {exc}") from exc
        count = getattr(result, "count", None)
        if count is None:
            return len(self._rows(result))
        return int(count)

    def list_successful_login_ips(self, *, user_id: str, since: datetime) -> list[str]:
        try:
            result = (
                self.client.table("login_attempts")
                .select("ip_address")
                .eq("user_id", user_id)
                .eq("success", True)
                .gt("timestamp", since.isoformat())
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to list login IP addresses: {exc}") from exc
        return list(dict.fromkeys(str(row["ip_address"]) for row in self._rows(result) if row.get("ip_address")))

    def list_login_history(self, *, user_id: str, limit: int, offset: int = 0) -> list[dict[str, Any]]:
        try:
            result = (
                self.client.table("login_attempts")
                .select("*")
                .eq("user_id", user_id)
                .order("timestamp", desc=True)
                .range(offset, offset + limit - 1)
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to load login history: {exc}") from exc
        return self._rows(result)

    def list_trusted_profiles(self, user_id: str) -> list[GeolocationProfile]:
        try:
            result = (
                self.client.table("user_geolocation_profiles")
                .select("*")
                .eq("user_id", user_id)
                .eq("is_trusted", True)
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to load trusted locations: {exc}") from exc
        return [GeolocationProfile.from_row(row) for row in self._rows(result)]

    def get_profile(self, *, user_id: str, country_code: str, city: str | None) -> GeolocationProfile | None:
        query = (
            self.client.table("user_geolocation_profiles")
            .select("*")
            .eq("user_id", user_id)
            .eq("country_code", country_code)
        )
        query = query.eq("city", city) if city is not None else query.is_("city", "null")
        try:
            result = query.limit(1).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to load geolocation profile: {exc}") from exc
        row = self._single_row(result)
        return GeolocationProfile.from_row(row) if row else None

    def insert_profile(self, *, user_id: str, location: GeoLocation, is_trusted: bool, seen_at: datetime) -> None:
        payload = {
            "user_id": user_id,
            "country_code": location.country_code,
            "city": location.city,
            "latitude": location.latitude,
            "longitude": location.longitude,
            "is_trusted": is_trusted,
            "login_count": 1,
            "last_seen": seen_at.isoformat(),
        }
        try:
            self.client.table("user_geolocation_profiles").insert(payload).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to create geolocation profile: {exc}") from exc

    def update_profile(self, *, profile_id: str, login_count: int, is_trusted: bool, seen_at: datetime) -> None:
        updates = {
            "login_count": login_count,
            "is_trusted": is_trusted,
            "last_seen": seen_at.isoformat(),
        }
        try:
            self.client.table("user_geolocation_profiles").update(updates).eq("id", profile_id).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to update geolocation profile: {exc}") from exc

    def insert_fraud_flag(
        self,
        *,
        user_id: str | None,
        reason: str,
        severity: int,
        ip_address: str | None,
        metadata: dict[str, Any],
        detected_at: datetime,
    ) -> None:
        payload = {
            "user_id": user_id,
            "reason": reason,
            "severity": severity,
            "ip_address": ip_address,
            "metadata": metadata,
            "detected_at": detected_at.isoformat(),
        }
        try:
            self.client.table("fraud_flags").insert(payload).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to record fraud flag: {exc}") from exc

    def list_fraud_flags(self, *, user_id: str, limit: int, offset: int = 0) -> list[dict[str, Any]]:
        try:
            result = (
                self.client.table("fraud_flags")
                .select("*")
                .eq("user_id", user_id)
                .order("detected_at", desc=True)
                .range(offset, offset + limit - 1)
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to load fraud flags: {exc}") from exc
        return self._rows(result)

    def insert_audit_entry(self, payload: dict[str, Any]) -> None:
        try:
            self.client.table("audit_logs").insert(payload).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to write audit entry: {exc}") from exc

    def list_audit_entries(self, *, user_id: str | None, limit: int, offset: int = 0) -> list[dict[str, Any]]:
        query = self.client.table("audit_logs").select("*")
        if user_id is not None:
            query = query.eq("user_id", user_id)
        try:
            result = query.order("timestamp", desc=True).range(offset, offset + limit - 1).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to load audit entries: {exc}") from exc
        return self._rows(result)
