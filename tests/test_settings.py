from kanidm_provision.settings import ProvisionSettings


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("KANIDM_PROVISION_URL", "https://idm.example.com/")
    monkeypatch.setenv("KANIDM_PROVISION_IDM_ADMIN_TOKEN", "secret")
    monkeypatch.setenv("KANIDM_PROVISION_ACCEPT_INVALID_CERTS", "true")

    s = ProvisionSettings()
    assert s.base_url == "https://idm.example.com"
    assert s.idm_admin_user == "idm_admin"
    assert s.idm_admin_token == "secret"
    assert s.accept_invalid_certs is True
    assert s.auto_remove is True
    assert s.has_credentials


def test_settings_without_token(monkeypatch):
    monkeypatch.delenv("KANIDM_PROVISION_IDM_ADMIN_TOKEN", raising=False)
    assert not ProvisionSettings().has_credentials


def test_with_overrides_keeps_unset_values():
    base = ProvisionSettings(url="https://a", idm_admin_token="t", timeout=5.0)

    s = base.with_overrides(url="https://b", auto_remove=False)
    assert s.url == "https://b"
    assert s.auto_remove is False
    assert s.idm_admin_token == "t"
    assert s.timeout == 5.0
    assert s.accept_invalid_certs is False

    unchanged = base.with_overrides()
    assert unchanged.url == "https://a"
    assert unchanged.auto_remove is True
