"""
Probe Executor

Runs the ordered capability probes for one credential against one
subscription and returns a ProbeReport. Probes are data: an ordered list of
descriptors walked by a single loop, which consults each descriptor's flags to
decide whether a failure aborts the run or is recorded and skipped past.
"""
import logging
import mimetypes
import secrets
import string
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from sp_validator.services.probes.provider import (
    CapabilityProvider,
    ProviderError,
    ProviderFactory,
    StorageAccountInfo,
)

logger = logging.getLogger(__name__)

WEBSITE_CONTAINER = "$web"
INDEX_DOCUMENT = "index.html"
ERROR_DOCUMENT = "404.html"
DEFAULT_TEST_FILES = (INDEX_DOCUMENT, ERROR_DOCUMENT)

RESOURCE_GROUP_CREATE = "resource_group_create"
STORAGE_ACCOUNT_CREATE = "storage_account_create"
STATIC_WEBSITE_ENABLE = "static_website_enable"
BLOB_CONTAINER_CREATE = "blob_container_create"
BLOB_UPLOAD = "blob_upload"
STORAGE_ACCOUNT_DELETE = "storage_account_delete"

PERMISSION_KEYS = (
    RESOURCE_GROUP_CREATE,
    STORAGE_ACCOUNT_CREATE,
    BLOB_CONTAINER_CREATE,
    BLOB_UPLOAD,
    STATIC_WEBSITE_ENABLE,
    STORAGE_ACCOUNT_DELETE,
)

AUTHENTICATION_ERROR_PREFIX = "Authentication failed: "

_NAME_ALPHABET = string.ascii_lowercase + string.digits


def generate_storage_account_name(prefix: str = "azval", now_ms: Optional[int] = None) -> str:
    """Fresh storage account name: prefix + 6 random chars + last 6 clock digits."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    random_part = "".join(secrets.choice(_NAME_ALPHABET) for _ in range(6))
    return f"{prefix}{random_part}{str(now_ms)[-6:]}".lower()


def default_payload(file_name: str) -> bytes:
    return f"<html><body><h1>{file_name}</h1></body></html>".encode("utf-8")


def load_test_file(file_name: str, base_dir: Optional[Path]) -> Tuple[bytes, str]:
    """
    Return ``(data, content_type)`` for a test payload file.

    Files missing from ``base_dir`` (or outside it) get a trivial HTML body.
    """
    content_type = mimetypes.guess_type(file_name)[0] or "application/octet-stream"
    if base_dir is not None:
        root = base_dir.resolve()
        candidate = (root / file_name).resolve()
        if root in candidate.parents and candidate.is_file():
            try:
                return candidate.read_bytes(), content_type
            except OSError as exc:
                logger.warning("Could not read test file %s: %s", candidate, exc)
    return default_payload(file_name), content_type


@dataclass
class ProbeContext:
    provider: CapabilityProvider
    resource_group: str
    location: str
    test_files: Sequence[str]
    test_files_dir: Optional[Path]
    name_generator: Callable[[], str]
    storage_account: Optional[StorageAccountInfo] = None
    # Site accounts this run created, removed at the end when cleanup is enabled
    created_accounts: List[str] = field(default_factory=list)


ProbeRunner = Callable[[ProbeContext], Awaitable[None]]


@dataclass(frozen=True)
class ProbeDescriptor:
    name: str
    permission: str
    error_prefix: str
    run: ProbeRunner
    mandatory: bool = False
    gates_validity: bool = True
    requires: Tuple[str, ...] = ()


@dataclass
class ProbeReport:
    is_valid: bool
    permissions: Dict[str, bool]
    errors: List[str] = field(default_factory=list)
    storage_account_name: Optional[str] = None
    website_url: Optional[str] = None

    @classmethod
    def aborted(cls, error: str) -> "ProbeReport":
        """Minimal report for a run that stopped before any optional probe ran."""
        return cls(is_valid=False, permissions={}, errors=[error])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "permissions": dict(self.permissions),
            "errors": list(self.errors),
            "storage_account_name": self.storage_account_name,
            "website_url": self.website_url,
        }


async def _ensure_resource_group(ctx: ProbeContext) -> None:
    await ctx.provider.ensure_resource_group(ctx.resource_group, ctx.location)


async def _create_storage_account(ctx: ProbeContext) -> None:
    name = ctx.name_generator()
    ctx.storage_account = await ctx.provider.create_storage_account(ctx.resource_group, name, ctx.location)
    ctx.created_accounts.append(ctx.storage_account.name)


async def _enable_static_website(ctx: ProbeContext) -> None:
    await ctx.provider.enable_static_website(ctx.storage_account.name, INDEX_DOCUMENT, ERROR_DOCUMENT)


async def _create_public_container(ctx: ProbeContext) -> None:
    await ctx.provider.create_public_container(ctx.storage_account.name, WEBSITE_CONTAINER)


async def _upload_test_files(ctx: ProbeContext) -> None:
    for file_name in ctx.test_files:
        data, content_type = load_test_file(file_name, ctx.test_files_dir)
        await ctx.provider.upload_blob(ctx.storage_account.name, WEBSITE_CONTAINER, file_name, data, content_type)
        logger.info("Uploaded %s", file_name)


async def _check_storage_account_delete(ctx: ProbeContext) -> None:
    # Throwaway account so the probed site account is left in place
    temp_name = ctx.name_generator()
    await ctx.provider.create_storage_account(ctx.resource_group, temp_name, ctx.location)
    await ctx.provider.delete_storage_account(ctx.resource_group, temp_name)


RESOURCE_GROUP_PROBE = ProbeDescriptor(
    name="resource_group",
    permission=RESOURCE_GROUP_CREATE,
    error_prefix="Resource group creation failed: ",
    run=_ensure_resource_group,
    mandatory=True,
)
STORAGE_ACCOUNT_PROBE = ProbeDescriptor(
    name="storage_account",
    permission=STORAGE_ACCOUNT_CREATE,
    error_prefix="Storage account creation failed: ",
    run=_create_storage_account,
)
STATIC_WEBSITE_PROBE = ProbeDescriptor(
    name="static_website",
    permission=STATIC_WEBSITE_ENABLE,
    error_prefix="Static website enable failed: ",
    run=_enable_static_website,
    gates_validity=False,
    requires=(STORAGE_ACCOUNT_CREATE,),
)
CONTAINER_PROBE = ProbeDescriptor(
    name="blob_container",
    permission=BLOB_CONTAINER_CREATE,
    error_prefix="Container creation failed: ",
    run=_create_public_container,
    requires=(STORAGE_ACCOUNT_CREATE,),
)
UPLOAD_PROBE = ProbeDescriptor(
    name="blob_upload",
    permission=BLOB_UPLOAD,
    error_prefix="File upload failed: ",
    run=_upload_test_files,
    requires=(STORAGE_ACCOUNT_CREATE, BLOB_CONTAINER_CREATE),
)
CLEANUP_PROBE = ProbeDescriptor(
    name="storage_account_delete",
    permission=STORAGE_ACCOUNT_DELETE,
    error_prefix="Storage account deletion test failed: ",
    run=_check_storage_account_delete,
    gates_validity=False,
)


def build_probe_sequence(cleanup_enabled: bool) -> Tuple[ProbeDescriptor, ...]:
    probes = [
        RESOURCE_GROUP_PROBE,
        STORAGE_ACCOUNT_PROBE,
        STATIC_WEBSITE_PROBE,
        CONTAINER_PROBE,
        UPLOAD_PROBE,
    ]
    if cleanup_enabled:
        probes.append(CLEANUP_PROBE)
    return tuple(probes)


class ProbeExecutor:
    """Runs the probe sequence through providers built by ``provider_factory``."""

    def __init__(
        self,
        provider_factory: ProviderFactory,
        *,
        cleanup_enabled: bool = False,
        test_files_dir: Optional[Path] = None,
        default_resource_group: str = "validation-rg",
        default_location: str = "eastus",
        default_test_files: Sequence[str] = DEFAULT_TEST_FILES,
        name_generator: Optional[Callable[[], str]] = None,
    ):
        self._provider_factory = provider_factory
        self._test_files_dir = test_files_dir
        self._default_resource_group = default_resource_group
        self._default_location = default_location
        self._default_test_files = tuple(default_test_files)
        self._name_generator = name_generator or generate_storage_account_name
        self._cleanup_enabled = cleanup_enabled
        self.probes = build_probe_sequence(cleanup_enabled)

    async def run(
        self,
        credentials: Dict[str, Any],
        subscription_id: str,
        test_config: Optional[Dict[str, Any]] = None,
    ) -> ProbeReport:
        test_config = test_config or {}

        # Probe 1: build the credential handle; nothing is verified until first use
        try:
            provider = self._provider_factory(credentials, subscription_id)
        except ProviderError as exc:
            logger.warning("Authentication setup failed: %s", exc)
            return ProbeReport.aborted(f"{AUTHENTICATION_ERROR_PREFIX}{exc}")

        ctx = ProbeContext(
            provider=provider,
            resource_group=test_config.get("resource_group") or self._default_resource_group,
            location=test_config.get("location") or self._default_location,
            test_files=test_config.get("test_files") or self._default_test_files,
            test_files_dir=self._test_files_dir,
            name_generator=self._name_generator,
        )
        try:
            return await self._run_probes(ctx)
        finally:
            if self._cleanup_enabled:
                await self._teardown(ctx)
            await provider.close()

    async def _teardown(self, ctx: ProbeContext) -> None:
        """Delete the accounts this run created. Failures are logged only; the report is already final."""
        for name in ctx.created_accounts:
            try:
                await ctx.provider.delete_storage_account(ctx.resource_group, name)
                logger.info("Removed storage account %s", name)
            except ProviderError as exc:
                logger.warning("Could not remove storage account %s: %s", name, exc)

    async def _run_probes(self, ctx: ProbeContext) -> ProbeReport:
        permissions = {key: False for key in PERMISSION_KEYS}
        errors: List[str] = []

        for probe in self.probes:
            missing = [key for key in probe.requires if not permissions.get(key)]
            if missing:
                logger.info("Skipping probe %s: prerequisite %s did not pass", probe.name, ", ".join(missing))
                continue

            logger.info("Running probe %s", probe.name)
            try:
                await probe.run(ctx)
            except ProviderError as exc:
                message = f"{probe.error_prefix}{exc}"
                if probe.mandatory:
                    logger.warning("Mandatory probe %s failed; aborting run: %s", probe.name, exc)
                    return ProbeReport.aborted(message)
                logger.warning("Probe %s failed: %s", probe.name, exc)
                errors.append(message)
                continue
            permissions[probe.permission] = True

        is_valid = all(permissions[probe.permission] for probe in self.probes if probe.gates_validity)
        account = ctx.storage_account
        website_url = account.web_endpoint.rstrip("/") if account and account.web_endpoint else None
        return ProbeReport(
            is_valid=is_valid,
            permissions=permissions,
            errors=errors,
            storage_account_name=account.name if account else None,
            website_url=website_url,
        )
