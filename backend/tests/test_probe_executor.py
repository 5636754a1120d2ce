import re

import pytest

from sp_validator.services.probes.executor import (
    DEFAULT_TEST_FILES,
    PERMISSION_KEYS,
    ProbeExecutor,
    ProbeReport,
    default_payload,
    generate_storage_account_name,
    load_test_file,
)
from sp_validator.services.probes.provider import ProviderError

from tests.fakes import FakeCapabilityProvider, sequential_names

CREDENTIALS = {"tenant_id": "tenant", "client_id": "client", "client_secret": "secret"}
SUBSCRIPTION = "sub-123"
AUTH_ERROR = "ClientSecretCredential authentication failed: AADSTS7000215: Invalid client secret provided."


def make_executor(provider, **kwargs):
    kwargs.setdefault("name_generator", sequential_names())
    return ProbeExecutor(lambda credentials, subscription_id: provider, **kwargs)


@pytest.mark.asyncio
async def test_full_success_without_cleanup(fake_provider):
    report = await make_executor(fake_provider).run(CREDENTIALS, SUBSCRIPTION, {"resource_group": "rg", "location": "westus"})

    assert report.is_valid is True
    assert report.permissions == {
        "resource_group_create": True,
        "storage_account_create": True,
        "blob_container_create": True,
        "blob_upload": True,
        "static_website_enable": True,
        "storage_account_delete": False,
    }
    assert report.errors == []
    assert report.storage_account_name == "azvaltest000001"
    assert report.website_url == "https://azvaltest000001.z13.web.core.windows.net"
    assert fake_provider.resource_groups == {"rg": "westus"}
    assert ("azvaltest000001", "$web") in fake_provider.containers
    assert fake_provider.static_websites["azvaltest000001"] == ("index.html", "404.html")
    assert fake_provider.closed is True


@pytest.mark.asyncio
async def test_probes_run_in_dependency_order(fake_provider):
    await make_executor(fake_provider, cleanup_enabled=True).run(CREDENTIALS, SUBSCRIPTION)

    assert fake_provider.operations == [
        "ensure_resource_group",
        "create_storage_account",
        "enable_static_website",
        "create_public_container",
        "upload_blob",
        "upload_blob",
        "create_storage_account",
        "delete_storage_account",
        "delete_storage_account",
    ]


@pytest.mark.asyncio
async def test_default_payloads_uploaded_with_html_content_type(fake_provider):
    await make_executor(fake_provider).run(CREDENTIALS, SUBSCRIPTION)

    for name in DEFAULT_TEST_FILES:
        data, content_type = fake_provider.blobs[("azvaltest000001", "$web", name)]
        assert data == f"<html><body><h1>{name}</h1></body></html>".encode()
        assert content_type == "text/html"


@pytest.mark.asyncio
async def test_mandatory_probe_failure_aborts_with_single_error():
    provider = FakeCapabilityProvider(failures={"ensure_resource_group": AUTH_ERROR})

    report = await make_executor(provider, cleanup_enabled=True).run(CREDENTIALS, SUBSCRIPTION)

    assert report.is_valid is False
    assert report.permissions == {}
    assert report.errors == [f"Resource group creation failed: {AUTH_ERROR}"]
    assert report.storage_account_name is None
    assert report.website_url is None
    assert provider.operations == ["ensure_resource_group"]
    assert provider.closed is True


@pytest.mark.asyncio
async def test_static_website_failure_does_not_gate_validity():
    provider = FakeCapabilityProvider(failures={"enable_static_website": "FeatureNotSupported"})

    report = await make_executor(provider).run(CREDENTIALS, SUBSCRIPTION)

    assert report.is_valid is True
    assert report.permissions["static_website_enable"] is False
    assert report.errors == ["Static website enable failed: FeatureNotSupported"]


@pytest.mark.asyncio
async def test_container_failure_skips_upload_without_extra_error():
    provider = FakeCapabilityProvider(failures={"create_public_container": "AuthorizationFailure"})

    report = await make_executor(provider).run(CREDENTIALS, SUBSCRIPTION)

    assert report.is_valid is False
    assert report.permissions["blob_container_create"] is False
    assert report.permissions["blob_upload"] is False
    assert report.permissions["static_website_enable"] is True
    assert report.errors == ["Container creation failed: AuthorizationFailure"]
    assert "upload_blob" not in provider.operations


@pytest.mark.asyncio
async def test_storage_account_failure_skips_dependent_probes():
    provider = FakeCapabilityProvider(failures={"create_storage_account": "The storage account named x is already taken."})

    report = await make_executor(provider).run(CREDENTIALS, SUBSCRIPTION)

    assert report.is_valid is False
    assert report.permissions["resource_group_create"] is True
    assert set(report.permissions) == set(PERMISSION_KEYS)
    assert not any(report.permissions[key] for key in PERMISSION_KEYS if key != "resource_group_create")
    assert report.errors == ["Storage account creation failed: The storage account named x is already taken."]
    assert report.storage_account_name is None
    assert report.website_url is None


@pytest.mark.asyncio
async def test_upload_failure_invalidates():
    provider = FakeCapabilityProvider(failures={"upload_blob": "This request is not authorized"})

    report = await make_executor(provider).run(CREDENTIALS, SUBSCRIPTION)

    assert report.is_valid is False
    assert report.permissions["blob_upload"] is False
    assert report.errors == ["File upload failed: This request is not authorized"]


@pytest.mark.asyncio
async def test_cleanup_removes_every_created_account(fake_provider):
    report = await make_executor(fake_provider, cleanup_enabled=True).run(CREDENTIALS, SUBSCRIPTION)

    assert report.is_valid is True
    assert report.permissions["storage_account_delete"] is True
    assert report.storage_account_name == "azvaltest000001"
    assert fake_provider.storage_accounts == {}
    assert fake_provider.calls[-1] == ("delete_storage_account", ("validation-rg", "azvaltest000001"))


@pytest.mark.asyncio
async def test_site_account_kept_without_cleanup(fake_provider):
    await make_executor(fake_provider).run(CREDENTIALS, SUBSCRIPTION)

    assert list(fake_provider.storage_accounts) == ["azvaltest000001"]
    assert "delete_storage_account" not in fake_provider.operations


@pytest.mark.asyncio
async def test_teardown_runs_when_a_later_probe_fails():
    provider = FakeCapabilityProvider(failures={"upload_blob": "denied"})

    report = await make_executor(provider, cleanup_enabled=True).run(CREDENTIALS, SUBSCRIPTION)

    assert report.is_valid is False
    assert provider.storage_accounts == {}
    assert provider.closed is True


@pytest.mark.asyncio
async def test_cleanup_failure_never_gates_validity():
    provider = FakeCapabilityProvider(failures={"delete_storage_account": "ScopeLocked"})

    report = await make_executor(provider, cleanup_enabled=True).run(CREDENTIALS, SUBSCRIPTION)

    assert report.is_valid is True
    assert report.permissions["storage_account_delete"] is False
    assert report.errors == ["Storage account deletion test failed: ScopeLocked"]
    # The failed teardown of the site account is not reported
    assert provider.operations.count("delete_storage_account") == 2
    assert "azvaltest000001" in provider.storage_accounts


@pytest.mark.asyncio
async def test_cleanup_probe_runs_even_when_container_probe_fails():
    provider = FakeCapabilityProvider(failures={"create_public_container": "denied"})

    report = await make_executor(provider, cleanup_enabled=True).run(CREDENTIALS, SUBSCRIPTION)

    assert report.permissions["storage_account_delete"] is True
    assert report.is_valid is False


@pytest.mark.asyncio
async def test_authentication_setup_failure_is_reported():
    def failing_factory(credentials, subscription_id):
        raise ProviderError("Invalid tenant id provided")

    report = await ProbeExecutor(failing_factory).run(CREDENTIALS, SUBSCRIPTION)

    assert report.is_valid is False
    assert report.permissions == {}
    assert report.errors == ["Authentication failed: Invalid tenant id provided"]


@pytest.mark.asyncio
async def test_unexpected_errors_escape_and_provider_is_closed():
    class ExplodingProvider(FakeCapabilityProvider):
        async def create_public_container(self, account, container):
            raise RuntimeError("bug in probe")

    provider = ExplodingProvider()
    with pytest.raises(RuntimeError):
        await make_executor(provider).run(CREDENTIALS, SUBSCRIPTION)
    assert provider.closed is True


@pytest.mark.asyncio
async def test_test_config_defaults_and_overrides(fake_provider):
    executor = make_executor(fake_provider, default_resource_group="default-rg", default_location="northeurope")

    await executor.run(CREDENTIALS, SUBSCRIPTION, {"test_files": ["app.js"]})

    assert fake_provider.resource_groups == {"default-rg": "northeurope"}
    data, content_type = fake_provider.blobs[("azvaltest000001", "$web", "app.js")]
    assert data == default_payload("app.js")
    assert content_type in ("application/javascript", "text/javascript")


@pytest.mark.asyncio
async def test_payload_files_read_from_directory(tmp_path, fake_provider):
    (tmp_path / "index.html").write_bytes(b"<html>custom</html>")

    await make_executor(fake_provider, test_files_dir=tmp_path).run(CREDENTIALS, SUBSCRIPTION)

    assert fake_provider.blobs[("azvaltest000001", "$web", "index.html")][0] == b"<html>custom</html>"
    assert fake_provider.blobs[("azvaltest000001", "$web", "404.html")][0] == default_payload("404.html")


def test_load_test_file_refuses_paths_outside_directory(tmp_path):
    files_dir = tmp_path / "files"
    files_dir.mkdir()
    (tmp_path / "outside.html").write_bytes(b"nope")

    data, content_type = load_test_file("../outside.html", files_dir)

    assert data == default_payload("../outside.html")
    assert content_type == "text/html"


def test_unknown_extension_falls_back_to_octet_stream():
    assert load_test_file("blob.unknownext", None)[1] == "application/octet-stream"


def test_generated_storage_account_name_shape():
    name = generate_storage_account_name(now_ms=1_700_000_123_456)

    assert name.startswith("azval")
    assert name.endswith("123456")
    assert len(name) == 17
    assert re.fullmatch(r"[a-z0-9]{3,24}", name)


def test_generated_names_are_fresh():
    names = {generate_storage_account_name(now_ms=1) for _ in range(20)}
    assert len(names) > 1


def test_report_serialization_keys():
    report = ProbeReport(is_valid=False, permissions={}, errors=["x"])
    assert report.to_dict() == {
        "is_valid": False,
        "permissions": {},
        "errors": ["x"],
        "storage_account_name": None,
        "website_url": None,
    }


@pytest.mark.asyncio
async def test_configured_executor_uses_settings(fake_provider):
    from sp_validator.core.job_manager_provider import build_probe_executor

    executor = build_probe_executor(lambda credentials, subscription_id: fake_provider)
    report = await executor.run(CREDENTIALS, SUBSCRIPTION, {})

    assert report.storage_account_name.startswith("azval")
    assert fake_provider.resource_groups == {"validation-rg": "eastus"}
    assert "storage_account_delete" not in [probe.name for probe in executor.probes]
    assert sorted(name for _, _, name in fake_provider.blobs) == ["404.html", "index.html"]
