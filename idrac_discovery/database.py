"""
DSM (Supabase/PostgREST) gateway for discovery.

Reads credential profiles, assignments, host overrides, datacenter scopes and
firmware baselines; writes server inventory rows, operational events and
discovery job status.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from idrac_discovery.config import DSM_URL, SERVICE_ROLE_KEY, VERIFY_SSL
from idrac_discovery.errors import DiscoveryError
from idrac_discovery.models import (
    CredentialAssignment,
    CredentialPolicy,
    CredentialProfile,
    FirmwareBaseline,
    HostCredentialOverride,
    HostFailureEvent,
    IpScope,
)
from idrac_discovery.utils import _safe_json_parse, utc_now, utc_now_iso

logger = logging.getLogger(__name__)

DISCOVERY_JOB_TYPE = "discovery_scan"


class DsmError(DiscoveryError):
    """Raised when a read the discovery run depends on fails"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, error_code="DSM_REQUEST_FAILED")
        self.status_code = status_code


class DsmClient:
    def __init__(
        self,
        url: str = DSM_URL,
        service_role_key: str = SERVICE_ROLE_KEY,
        verify_ssl: bool = VERIFY_SSL,
        timeout: float = 10,
    ):
        self.url = url.rstrip('/')
        self.service_role_key = service_role_key
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self.encryption_key: Optional[str] = None

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.service_role_key,
            "Authorization": f"Bearer {self.service_role_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _handle_supabase_auth_error(self, response, context: str):
        """Raise with helpful log message on Supabase authorization failures"""
        if response.status_code in (401, 403):
            logger.error(
                f"Authorization failed while {context} (HTTP {response.status_code}). "
                "Verify SERVICE_ROLE_KEY and DSM_URL before retrying."
            )
            raise PermissionError(f"Supabase authorization failed during {context}")

    def _select(self, table: str, params: Dict[str, str], context: str) -> List[Dict]:
        try:
            response = requests.get(
                f"{self.url}/rest/v1/{table}",
                headers=self._headers(),
                params=params,
                verify=self.verify_ssl,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise DsmError(f"Error {context}: {e}")
        self._handle_supabase_auth_error(response, context)
        if response.status_code != 200:
            raise DsmError(f"Error {context}: HTTP {response.status_code}", response.status_code)
        rows = _safe_json_parse(response)
        if not isinstance(rows, list):
            raise DsmError(f"Error {context}: unexpected response body")
        return rows

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def get_encryption_key(self) -> Optional[str]:
        """Fetch the encryption key from activity_settings (cached)"""
        if self.encryption_key:
            return self.encryption_key
        rows = self._select("activity_settings", {"select": "encryption_key", "limit": "1"},
                            "loading encryption key")
        if rows:
            self.encryption_key = rows[0].get('encryption_key')
        return self.encryption_key

    def decrypt_password(self, encrypted_password: str) -> Optional[str]:
        """Decrypt a password using the database decrypt_password function"""
        if not encrypted_password:
            return None
        encryption_key = self.get_encryption_key()
        if not encryption_key:
            logger.error("Cannot decrypt: encryption key not available")
            return None

        try:
            response = requests.post(
                f"{self.url}/rest/v1/rpc/decrypt_password",
                headers=self._headers(),
                json={"encrypted": encrypted_password, "key": encryption_key},
                verify=self.verify_ssl,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise DsmError(f"Error decrypting password: {e}")
        self._handle_supabase_auth_error(response, "decrypting password")
        if response.status_code != 200:
            logger.error(f"Decryption failed: HTTP {response.status_code}")
            return None
        decrypted = _safe_json_parse(response)
        if not decrypted or not isinstance(decrypted, str):
            logger.warning("Decryption returned null - possibly corrupted data")
            return None
        return decrypted

    def get_credential_policy(self, datacenter_id: Optional[str] = None) -> CredentialPolicy:
        """
        Load profiles, active assignments and host overrides.

        Profiles whose password cannot be decrypted are left out (and logged)
        rather than failing the whole run.
        """
        profiles = []
        for row in self._select("credential_profiles", {"select": "*", "order": "priority_order.asc"},
                                "fetching credential profiles"):
            secret = self.decrypt_password(row.get('password_encrypted'))
            if secret is None:
                logger.error(f"Skipping credential profile {row.get('name')}: password could not be decrypted")
                continue
            profiles.append(CredentialProfile(
                id=row['id'],
                name=row.get('name') or row['id'],
                username=row['username'],
                secret=secret,
                port=row.get('port') or 443,
                protocol=row.get('protocol') or 'https',
                priority_order=row.get('priority_order') if row.get('priority_order') is not None else 100,
                is_default=bool(row.get('is_default')),
            ))

        params = {"select": "*", "is_active": "eq.true"}
        if datacenter_id:
            params["or"] = f"(datacenter_id.eq.{datacenter_id},datacenter_id.is.null)"
        assignments = [
            CredentialAssignment(
                id=row.get('id'),
                profile_id=row['credential_profile_id'],
                subnet=row.get('ip_range_cidr'),
                range_start=row.get('ip_range_start'),
                range_end=row.get('ip_range_end'),
                vlan=row.get('vlan'),
                is_active=row.get('is_active', True),
            )
            for row in self._select("credential_assignments", params, "fetching credential assignments")
        ]

        overrides = [
            HostCredentialOverride(address=row['ip_address'], profile_id=row['credential_profile_id'])
            for row in self._select("host_credential_overrides", {"select": "ip_address,credential_profile_id"},
                                    "fetching host credential overrides")
        ]

        logger.info(f"Loaded {len(profiles)} credential profile(s), {len(assignments)} assignment(s), "
                    f"{len(overrides)} host override(s)")
        return CredentialPolicy(profiles=profiles, assignments=assignments, host_overrides=overrides)

    # ------------------------------------------------------------------
    # Address space and baselines
    # ------------------------------------------------------------------

    def get_datacenter_scopes(self, datacenter_id: str) -> List[IpScope]:
        rows = self._select("datacenters", {"id": f"eq.{datacenter_id}", "select": "id,name,ip_scopes"},
                            "fetching datacenter scopes")
        if not rows:
            raise DsmError(f"Datacenter {datacenter_id} not found")
        scopes = rows[0].get('ip_scopes') or []
        return [IpScope(**scope) for scope in scopes if scope.get('subnet')]

    def get_firmware_baselines(self) -> List[FirmwareBaseline]:
        rows = self._select("firmware_baselines", {"select": "*"}, "fetching firmware baselines")
        return [
            FirmwareBaseline(
                model=row['model'],
                bios_version=row.get('bios_version'),
                idrac_version=row.get('idrac_version'),
                supported=row.get('supported', True),
                minimum_generation=row.get('minimum_generation'),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------

    def get_server(self, address: str) -> Optional[Dict]:
        rows = self._select("servers", {"ip_address": f"eq.{address}", "select": "*"}, f"fetching server {address}")
        return rows[0] if rows else None

    def find_servers_by_service_tag(self, service_tag: str) -> List[Dict]:
        return self._select("servers", {"service_tag": f"eq.{service_tag}", "select": "id,ip_address"},
                            f"looking up service tag {service_tag}")

    def upsert_server(self, row: Dict[str, Any]) -> None:
        """Upsert one servers row keyed by ip_address"""
        try:
            response = requests.post(
                f"{self.url}/rest/v1/servers",
                headers=self._headers("resolution=merge-duplicates,return=minimal"),
                params={"on_conflict": "ip_address"},
                json=row,
                verify=self.verify_ssl,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise DsmError(f"Error upserting server {row.get('ip_address')}: {e}")
        self._handle_supabase_auth_error(response, "upserting server")
        if response.status_code not in (200, 201, 204):
            raise DsmError(f"Failed to upsert server {row.get('ip_address')}: HTTP {response.status_code} "
                           f"{response.text[:300]}", response.status_code)

    def record_operational_event(self, event: HostFailureEvent, job_id: Optional[str] = None) -> bool:
        """Post a host failure to operational_events; failures are logged, not raised"""
        payload = {
            "event_type": f"discovery_{event.stage.value.replace('-', '_')}_failure",
            "event_source": "discovery",
            "severity": "warning",
            "title": f"Discovery failed for {event.address}: {event.reason}",
            "description": event.detail,
            "status": "failure",
            "error_details": event.detail,
            "metadata": {
                "address": event.address,
                "stage": event.stage.value,
                "reason": event.reason,
                "job_id": job_id,
                "occurred_at": event.occurred_at.isoformat(),
            },
        }
        try:
            response = requests.post(
                f"{self.url}/rest/v1/operational_events",
                headers=self._headers("return=minimal"),
                json=payload,
                verify=self.verify_ssl,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.warning(f"Error recording operational event for {event.address}: {e}")
            return False
        if response.status_code not in (200, 201, 204):
            logger.warning(f"Failed to record operational event for {event.address}: HTTP {response.status_code}")
            return False
        return True

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def get_pending_jobs(self, job_type: str = DISCOVERY_JOB_TYPE) -> List[Dict]:
        """Pending jobs of one type whose schedule_at has passed, oldest first"""
        jobs = self._select(
            "jobs",
            {"status": "eq.pending", "job_type": f"eq.{job_type}", "select": "*", "order": "created_at.asc"},
            "fetching pending jobs",
        )
        ready = []
        now = utc_now()
        for job in jobs:
            schedule_at = job.get('schedule_at')
            if schedule_at:
                try:
                    if datetime.fromisoformat(schedule_at.replace('Z', '+00:00')) > now:
                        continue
                except ValueError:
                    logger.warning(f"Error parsing schedule_at for job {job.get('id')}: {schedule_at!r}")
                    continue
            ready.append(job)
        return ready

    def get_job_details(self, job_id: str) -> Dict:
        rows = self._select("jobs", {"id": f"eq.{job_id}", "select": "details"}, f"fetching job {job_id}")
        return (rows[0].get('details') or {}) if rows else {}

    def update_job_status(
        self,
        job_id: str,
        status: Optional[str],
        details: Optional[Dict] = None,
        error: Optional[str] = None
    ) -> bool:
        """
        Update job status, merging details into the existing details.

        A status of None leaves the status column untouched, so progress
        updates never overwrite a cancellation made by the user.

        Returns:
            True if update successful, False otherwise
        """
        payload: Dict[str, Any] = {}
        if status is not None:
            payload["status"] = status
        if status == "running" and not details:
            payload["started_at"] = utc_now_iso()
        elif status in ("completed", "failed", "cancelled"):
            payload["completed_at"] = utc_now_iso()

        try:
            if details or error:
                merged = dict(self.get_job_details(job_id))
                merged.update(details or {})
                if error:
                    merged["error"] = error
                payload["details"] = merged

            response = requests.patch(
                f"{self.url}/rest/v1/jobs",
                headers=self._headers("return=minimal"),
                params={"id": f"eq.{job_id}"},
                json=payload,
                verify=self.verify_ssl,
                timeout=self.timeout,
            )
        except (requests.exceptions.RequestException, DsmError) as e:
            logger.error(f"Error updating job {job_id} status: {e}")
            return False

        if response.status_code in (200, 204):
            return True
        logger.warning(f"Failed to update job {job_id}: {response.status_code}")
        return False

    def is_job_cancelled(self, job_id: str) -> bool:
        """True if the job's status is 'cancelled'; errors count as not cancelled"""
        try:
            rows = self._select("jobs", {"id": f"eq.{job_id}", "select": "status"}, f"checking job {job_id}")
        except DsmError as e:
            logger.debug(f"Cancellation check for job {job_id} failed: {e}")
            return False
        return bool(rows) and rows[0].get('status') == 'cancelled'
