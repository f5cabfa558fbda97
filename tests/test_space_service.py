"""Tests for switching and maintaining spaces through the service layer."""
import configparser
import json
from pathlib import Path
import sys

import pytest

# Ensure application importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from dss_app.errors import (
    ActiveSpaceError,
    ConfigReadError,
    DuplicateNameError,
    ExternalCommandError,
    KeyGenerationError,
    NotFoundError,
)
from dss_app.services.space_service import (
    DONE,
    FAILED,
    OUTCOME_DRY_RUN,
    OUTCOME_EMPTY,
    OUTCOME_FAILED,
    OUTCOME_NO_OP,
    OUTCOME_NOT_FOUND,
    OUTCOME_SWITCHED,
    SKIPPED,
    STEP_AGENT_LOAD,
    STEP_GIT_IDENTITY,
    STEP_SSH_CONFIG,
    SpaceService,
)
from dss_app.spaces import new_space, save_config


def _load_cfg() -> configparser.ConfigParser:
    cfg = configparser.ConfigParser()
    cfg.read(Path(__file__).with_name("spaces_test_config.ini"))
    return cfg


class FakeSystem:
    """Stand-in for :mod:`dss_app.system` recording every call."""

    def __init__(self, fail_on=None):
        self.calls = []
        self.fail_on = fail_on
        self.loaded = set()

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        if name == self.fail_on:
            raise ExternalCommandError([name], 1, "simulated failure")

    def set_git_identity(self, user_name, email):
        self._record("set_git_identity", user_name, email)

    def load_key_into_agent(self, key_path):
        self._record("load_key_into_agent", key_path)
        self.loaded.add(key_path)

    def patch_ssh_client_config(self, key_path, ssh_config_file):
        self._record("patch_ssh_client_config", key_path, ssh_config_file)

    def unload_key_from_agent(self, key_path):
        self._record("unload_key_from_agent", key_path)

    def is_key_loaded(self, key_path):
        return key_path in self.loaded

    def probe_github_auth(self, key_path):
        self._record("probe_github_auth", key_path)
        return True, "Hi! You've successfully authenticated"

    def copy_to_clipboard(self, text):
        self._record("copy_to_clipboard", text)

    def tool_available(self, name):
        return name != "ssh"

    def get_git_identity(self):
        return "Old Name", "old@example.com"


def _service(tmp_path, system=None):
    return SpaceService(
        config_file=tmp_path / "spaces" / "config.json",
        ssh_config_file=tmp_path / "ssh_config",
        export_file=tmp_path / "export.json",
        key_bits=2048,
        system=system or FakeSystem(),
    )


def _seed(service, tmp_path, cfg, active=None, with_keys=True):
    spaces = []
    for section in ("work", "personal"):
        key_path = ""
        if with_keys:
            key = tmp_path / "keys" / section
            key.parent.mkdir(parents=True, exist_ok=True)
            key.write_text("private")
            key_path = str(key)
        spaces.append(
            new_space(
                cfg[section]["name"], cfg[section]["email"], cfg[section]["user_name"], key_path
            )
        )
    config = {"spaces": spaces}
    if active:
        config["activeSpace"] = active
    save_config(config, service.config_file)
    return spaces


def _raw(service):
    return service.config_file.read_bytes()


# Adding --------------------------------------------------------------------

def test_add_to_empty_config(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    service.add_space(cfg["work"]["name"], cfg["work"]["email"], cfg["work"]["user_name"])

    stored = json.loads(_raw(service))
    assert stored == {
        "spaces": [
            {
                "name": cfg["work"]["name"],
                "email": cfg["work"]["email"],
                "userName": cfg["work"]["user_name"],
                "sshKeyPath": "",
            }
        ]
    }
    assert service.system.calls == []


def test_add_increases_list_by_one(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    _seed(service, tmp_path, cfg, with_keys=False)
    before = len(service.load()["spaces"])

    space = service.add_space("third", "t@example.com", "T")
    spaces = service.load()["spaces"]
    assert len(spaces) == before + 1
    assert spaces[-1] == space


def test_duplicate_add_leaves_file_unchanged(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    _seed(service, tmp_path, cfg)
    before = _raw(service)

    with pytest.raises(DuplicateNameError):
        service.add_space(cfg["personal"]["name"].upper(), "x@y.z", "X")
    with pytest.raises(DuplicateNameError):
        service.add_space(cfg["expected"]["personal_slug"], "x@y.z", "X")
    assert _raw(service) == before


def test_add_rejects_invalid_input(tmp_path):
    service = _service(tmp_path)
    with pytest.raises(ValueError):
        service.add_space("", "a@b.com", "A")
    with pytest.raises(ValueError):
        service.add_space("n", "not-an-email", "A")


def test_add_with_generated_key(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    space = service.add_space(
        cfg["personal"]["name"],
        cfg["personal"]["email"],
        cfg["personal"]["user_name"],
        generate_key=True,
    )
    key_path = Path(space["sshKeyPath"])
    assert key_path.is_file()
    assert key_path.parent.name == cfg["expected"]["personal_slug"]
    assert service.load()["spaces"][0]["sshKeyPath"] == str(key_path)

    public = service.copy_public_key(space)
    assert public.endswith(cfg["personal"]["email"])
    assert service.system.calls == [("copy_to_clipboard", public)]


# Switching -----------------------------------------------------------------

def test_switch_applies_steps_in_order(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    spaces = _seed(service, tmp_path, cfg)

    result = service.switch_space(cfg["work"]["name"])

    assert result.outcome == OUTCOME_SWITCHED
    assert result.ok
    assert result.completed_steps == [STEP_GIT_IDENTITY, STEP_AGENT_LOAD, STEP_SSH_CONFIG]
    assert service.system.calls == [
        ("set_git_identity", cfg["work"]["user_name"], cfg["work"]["email"]),
        ("load_key_into_agent", spaces[0]["sshKeyPath"]),
        ("patch_ssh_client_config", spaces[0]["sshKeyPath"], service.ssh_config_file),
    ]
    assert service.load()["activeSpace"] == cfg["work"]["name"]


def test_switch_by_slug_records_display_name(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    _seed(service, tmp_path, cfg)
    result = service.switch_space(cfg["expected"]["personal_slug"])
    assert result.outcome == OUTCOME_SWITCHED
    assert service.load()["activeSpace"] == cfg["personal"]["name"]


def test_switch_to_active_space_is_noop(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    _seed(service, tmp_path, cfg, active=cfg["work"]["name"])
    before = _raw(service)

    result = service.switch_space(cfg["work"]["name"])
    assert result.outcome == OUTCOME_NO_OP
    assert result.ok
    assert service.system.calls == []
    assert _raw(service) == before


def test_force_reapplies_active_space(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    _seed(service, tmp_path, cfg, active=cfg["work"]["name"])
    result = service.switch_space(cfg["work"]["name"], force=True)
    assert result.outcome == OUTCOME_SWITCHED
    assert len(service.system.calls) == 3


def test_switch_unknown_space_touches_nothing(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    _seed(service, tmp_path, cfg)
    before = _raw(service)

    result = service.switch_space(cfg["expected"]["ghost"])
    assert result.outcome == OUTCOME_NOT_FOUND
    assert not result.ok
    assert service.system.calls == []
    assert _raw(service) == before


def test_switch_without_key_is_rejected(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    _seed(service, tmp_path, cfg, with_keys=False)
    result = service.switch_space(cfg["work"]["name"])
    assert result.outcome == OUTCOME_NOT_FOUND
    assert service.system.calls == []


def test_switch_on_empty_config(tmp_path):
    service = _service(tmp_path)
    assert service.switch_space("anything").outcome == OUTCOME_EMPTY


def test_dry_run_lists_steps_without_side_effects(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    _seed(service, tmp_path, cfg)
    before = _raw(service)

    result = service.switch_space(cfg["work"]["name"], dry_run=True)
    assert result.outcome == OUTCOME_DRY_RUN
    assert [s.name for s in result.steps] == [
        STEP_GIT_IDENTITY,
        STEP_AGENT_LOAD,
        STEP_SSH_CONFIG,
    ]
    assert all(s.description for s in result.steps)
    assert service.system.calls == []
    assert _raw(service) == before


def test_failed_step_stops_switch_and_keeps_active(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path, FakeSystem(fail_on="load_key_into_agent"))
    _seed(service, tmp_path, cfg, active=cfg["personal"]["name"])
    before = _raw(service)

    result = service.switch_space(cfg["work"]["name"])

    assert result.outcome == OUTCOME_FAILED
    assert [s.status for s in result.steps] == [DONE, FAILED, SKIPPED]
    assert result.failed_step.name == STEP_AGENT_LOAD
    assert "simulated failure" in result.failed_step.error
    assert [c[0] for c in service.system.calls] == ["set_git_identity", "load_key_into_agent"]
    assert _raw(service) == before


def test_batch_switch_stops_when_asked(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    _seed(service, tmp_path, cfg)
    seen = []

    def should_continue(result, remaining):
        seen.append((result.space, remaining))
        return False

    results = service.batch_switch(
        [cfg["work"]["name"], cfg["personal"]["name"]], should_continue
    )
    assert len(results) == 1
    assert seen == [(cfg["work"]["name"], 1)]
    assert service.load()["activeSpace"] == cfg["work"]["name"]


def test_batch_switch_runs_all(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    _seed(service, tmp_path, cfg)
    names = [cfg["work"]["name"], cfg["expected"]["ghost"], cfg["personal"]["name"]]

    results = service.batch_switch(names, lambda result, remaining: True)
    assert [r.outcome for r in results] == [
        OUTCOME_SWITCHED,
        OUTCOME_NOT_FOUND,
        OUTCOME_SWITCHED,
    ]
    assert service.load()["activeSpace"] == cfg["personal"]["name"]


# Removing and editing ------------------------------------------------------

def test_remove_active_space_is_rejected(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    _seed(service, tmp_path, cfg, active=cfg["work"]["name"])
    before = _raw(service)
    with pytest.raises(ActiveSpaceError):
        service.remove_space(cfg["work"]["name"])
    assert _raw(service) == before
    assert service.system.calls == []


def test_remove_unloads_key_and_keeps_files(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    spaces = _seed(service, tmp_path, cfg)

    result = service.remove_space(cfg["personal"]["name"])

    assert result["unload_error"] is None
    assert service.system.calls == [("unload_key_from_agent", spaces[1]["sshKeyPath"])]
    assert [s["name"] for s in service.load()["spaces"]] == [cfg["work"]["name"]]
    assert Path(spaces[1]["sshKeyPath"]).exists()


def test_remove_survives_unload_failure(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path, FakeSystem(fail_on="unload_key_from_agent"))
    _seed(service, tmp_path, cfg)
    result = service.remove_space(cfg["personal"]["name"])
    assert "simulated failure" in result["unload_error"]
    assert len(service.load()["spaces"]) == 1


def test_remove_dry_run(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    _seed(service, tmp_path, cfg)
    before = _raw(service)
    result = service.remove_space(cfg["personal"]["name"], dry_run=True)
    assert result["dry_run"] is True
    assert len(result["actions"]) == 2
    assert service.system.calls == []
    assert _raw(service) == before


def test_remove_unknown_space(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    _seed(service, tmp_path, cfg)
    with pytest.raises(NotFoundError):
        service.remove_space(cfg["expected"]["ghost"])


def test_update_renames_active_space_without_side_effects(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    _seed(service, tmp_path, cfg, active=cfg["work"]["name"])

    result = service.update_space(cfg["work"]["name"], new_name="job", email="j@b.com")

    assert result["changed"] == {
        "name": (cfg["work"]["name"], "job"),
        "email": (cfg["work"]["email"], "j@b.com"),
    }
    assert result["drift"] is True
    config = service.load()
    assert config["activeSpace"] == "job"
    assert config["spaces"][0]["email"] == "j@b.com"
    assert service.system.calls == []


def test_update_rejects_colliding_name(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    _seed(service, tmp_path, cfg)
    before = _raw(service)
    with pytest.raises(DuplicateNameError):
        service.update_space(cfg["work"]["name"], new_name=cfg["expected"]["personal_slug"])
    assert _raw(service) == before


def test_update_key_path(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    _seed(service, tmp_path, cfg, with_keys=False)

    with pytest.raises(FileNotFoundError):
        service.update_space(cfg["work"]["name"], ssh_key_path=tmp_path / "missing")

    key = tmp_path / "id_custom"
    key.write_text("k")
    result = service.update_space(cfg["work"]["name"], ssh_key_path=key)
    assert result["space"]["sshKeyPath"] == str(key.resolve())
    assert result["drift"] is False

    result = service.update_space(cfg["work"]["name"], ssh_key_path="")
    assert result["space"]["sshKeyPath"] == ""


def test_update_without_changes(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    _seed(service, tmp_path, cfg)
    before = _raw(service)
    result = service.update_space(cfg["work"]["name"], new_name=cfg["work"]["name"])
    assert result["changed"] == {}
    assert _raw(service) == before


# Diagnostics ---------------------------------------------------------------

def test_test_space_defaults_to_active(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    spaces = _seed(service, tmp_path, cfg, active=cfg["personal"]["name"])
    name, ok, message = service.test_space()
    assert name == cfg["personal"]["name"]
    assert ok is True
    assert service.system.calls == [("probe_github_auth", spaces[1]["sshKeyPath"])]


def test_test_space_without_active(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    _seed(service, tmp_path, cfg)
    with pytest.raises(NotFoundError):
        service.test_space()


def test_inspect_after_switch(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    _seed(service, tmp_path, cfg)
    service.system.patch_ssh_client_config = lambda key_path, ssh_config_file: (
        ssh_config_file.write_text(f"Host github.com\n  IdentityFile {key_path}\n")
    )
    service.switch_space(cfg["work"]["name"])

    details = service.inspect_space()
    assert details["name"] == cfg["work"]["name"]
    assert details["active"] is True
    assert details["key_exists"] is True
    assert details["loaded_in_agent"] is True
    assert details["ssh_config_matches"] is True
    assert details["fingerprint"] is None


def test_onboarding_status(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    _seed(service, tmp_path, cfg, active=cfg["work"]["name"])
    status = service.onboarding_status()
    assert status["tools"] == {"git": True, "ssh": False, "ssh-add": True}
    assert status["git_email"] == "old@example.com"
    assert status["space_count"] == 2
    assert status["active"] == cfg["work"]["name"]


# Export, import and bulk ----------------------------------------------------

def test_export_then_import_into_fresh_home(tmp_path):
    cfg = _load_cfg()
    source = _service(tmp_path / "a")
    _seed(source, tmp_path, cfg)
    path, count = source.export_spaces()
    assert count == 2

    data = json.loads(path.read_text())
    assert data["version"] == "1.0.0"
    assert data["exportDate"].endswith("Z")
    assert data["spaces"][0] == {
        "name": cfg["work"]["name"],
        "email": cfg["work"]["email"],
        "userName": cfg["work"]["user_name"],
        "hasSSHKey": True,
    }

    target = _service(tmp_path / "b")
    target.add_space(cfg["work"]["name"], cfg["work"]["email"], cfg["work"]["user_name"])
    imported, skipped = target.import_spaces(path)
    assert [s["name"] for s in imported] == [cfg["personal"]["name"]]
    assert skipped == [cfg["work"]["name"]]
    assert target.load()["spaces"][1]["sshKeyPath"] == ""


def test_export_selected_and_unknown(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    _seed(service, tmp_path, cfg)
    _, count = service.export_spaces([cfg["expected"]["personal_slug"]])
    assert count == 1
    with pytest.raises(NotFoundError):
        service.export_spaces([cfg["expected"]["ghost"]])


def test_read_import_missing_file(tmp_path):
    service = _service(tmp_path)
    with pytest.raises(FileNotFoundError):
        service.read_import(tmp_path / "nope.json")


def test_bulk_update_dry_run_and_apply(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    _seed(service, tmp_path, cfg)
    before = _raw(service)
    prefix = cfg["expected"]["user_prefix"]

    plans = service.bulk_update(
        [cfg["work"]["name"]],
        email_domain=cfg["expected"]["new_email_domain"],
        user_prefix=prefix,
        dry_run=True,
    )
    assert plans[0]["changes"]["email"][1] == cfg["expected"]["new_work_email"]
    assert plans[0]["changes"]["userName"][1] == prefix + cfg["work"]["user_name"]
    assert _raw(service) == before

    service.bulk_update(
        [cfg["work"]["name"]],
        email_domain=cfg["expected"]["new_email_domain"],
        user_prefix=prefix,
    )
    work = service.load()["spaces"][0]
    assert work["email"] == cfg["expected"]["new_work_email"]
    assert work["userName"] == prefix + cfg["work"]["user_name"]

    # prefixes already present are not doubled
    plans = service.bulk_update(user_prefix=prefix, dry_run=True)
    assert "userName" not in plans[0]["changes"]
    assert service.system.calls == []


def test_bulk_update_regenerates_keys(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    _seed(service, tmp_path, cfg, with_keys=False)
    service.bulk_update([cfg["personal"]["name"]], regenerate_keys=True)
    personal = service.load()["spaces"][1]
    assert Path(personal["sshKeyPath"]).parent.name == cfg["expected"]["personal_slug"]
    assert Path(personal["sshKeyPath"]).is_file()


def test_bulk_update_requires_a_change(tmp_path):
    service = _service(tmp_path)
    with pytest.raises(ValueError):
        service.bulk_update()


# Dry runs and damaged files --------------------------------------------------

def test_dry_runs_do_not_create_missing_config(tmp_path):
    service = _service(tmp_path)

    assert service.switch_space("work", dry_run=True).outcome == OUTCOME_EMPTY
    with pytest.raises(NotFoundError):
        service.remove_space("work", dry_run=True)
    assert service.bulk_update(user_prefix="dev-", dry_run=True) == []
    assert not service.config_file.exists()


def test_dry_runs_leave_malformed_config_alone(tmp_path):
    service = _service(tmp_path)
    service.config_file.parent.mkdir(parents=True)
    service.config_file.write_text("garbage")

    with pytest.raises(ConfigReadError):
        service.switch_space("work", dry_run=True)
    with pytest.raises(ConfigReadError):
        service.remove_space("work", dry_run=True)
    with pytest.raises(ConfigReadError):
        service.bulk_update(user_prefix="dev-", dry_run=True)
    assert service.config_file.read_text() == "garbage"
    assert not service.config_file.with_name("config.json.bak").exists()

    # a regular command still recovers the file
    assert service.switch_space("work").outcome == OUTCOME_EMPTY
    assert service.config_file.with_name("config.json.bak").exists()


def test_entries_that_are_not_spaces_are_recovered(tmp_path):
    service = _service(tmp_path)
    service.config_file.parent.mkdir(parents=True)
    service.config_file.write_text(json.dumps({"spaces": ["work"]}))

    assert service.switch_space("work").outcome == OUTCOME_EMPTY
    assert json.loads(_raw(service)) == {"spaces": []}


def test_space_names_is_read_only(tmp_path):
    service = _service(tmp_path)
    assert service.space_names() == []
    assert not service.config_file.exists()


def test_readding_space_with_leftover_key_explains_recovery(tmp_path):
    cfg = _load_cfg()
    service = _service(tmp_path)
    space = service.add_space(
        cfg["personal"]["name"],
        cfg["personal"]["email"],
        cfg["personal"]["user_name"],
        generate_key=True,
    )
    service.remove_space(space["name"])
    before = _raw(service)

    with pytest.raises(KeyGenerationError) as excinfo:
        service.add_space(
            cfg["personal"]["name"],
            cfg["personal"]["email"],
            cfg["personal"]["user_name"],
            generate_key=True,
        )
    message = str(excinfo.value)
    assert space["sshKeyPath"] in message
    assert "edit" in message and "--key" in message
    assert _raw(service) == before

    service.add_space(
        cfg["personal"]["name"], cfg["personal"]["email"], cfg["personal"]["user_name"]
    )
    result = service.update_space(cfg["personal"]["name"], ssh_key_path=space["sshKeyPath"])
    assert result["space"]["sshKeyPath"] == str(Path(space["sshKeyPath"]).resolve())
