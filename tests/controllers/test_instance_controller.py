import asyncio
import hashlib
from pathlib import Path

import pytest

from instancer.controllers.instance_controller import InstanceController
from instancer.models.install_state import InstallOutcome
from instancer.models.instance import InstanceConfig, read_instance_config, write_instance_config
from instancer.models.registry import RegistryProject
from instancer.utils.constants import ContentKind, InstanceStatus, LoaderFamily
from instancer.utils.exception import InstanceNotFoundError


@pytest.fixture
def controller(settings, fake_client, content_cache, task_registry) -> InstanceController:
    fake_client.add_base_version("1.20.1")
    fake_client.add_base_version("1.21")
    return InstanceController(settings, fake_client, content_cache, task_registry)


def _existing(controller: InstanceController, name: str, **fields) -> Path:
    instance_dir = controller.instance_dir(name)
    fields.setdefault("version", "1.20.1")
    fields.setdefault("status", InstanceStatus.READY)
    write_instance_config(instance_dir, InstanceConfig(name=name, **fields))
    return instance_dir


def test_create_instance_installs_in_background(controller: InstanceController) -> None:
    async def scenario():
        name, task = controller.create_instance("Survival", "1.20.1")
        return name, await task

    name, outcome = asyncio.run(scenario())

    assert name == "Survival"
    assert outcome is InstallOutcome.READY
    config = controller.get_instance("Survival")
    assert config.status is InstanceStatus.READY
    assert config.loader is LoaderFamily.VANILLA
    assert config.version_id == "1.20.1"


def test_create_instance_picks_free_name(controller: InstanceController) -> None:
    _existing(controller, "Survival")
    controller.instance_dir("Survival (1)").mkdir()

    async def scenario():
        name, task = controller.create_instance("Survival", "1.20.1")
        await task
        return name

    assert asyncio.run(scenario()) == "Survival (2)"
    assert [c.name for c in controller.list_instances()] == ["Survival", "Survival (2)"]


def test_create_instance_copies_game_settings(controller: InstanceController, settings) -> None:
    source = _existing(controller, "Template")
    (source / "options.txt").write_text("fov:90")
    settings.copy_settings_enabled = True
    settings.copy_settings_source_instance = "Template"

    async def scenario():
        name, task = controller.create_instance("Copy", "1.20.1")
        await task
        return name

    name = asyncio.run(scenario())

    assert (controller.instance_dir(name) / "options.txt").read_text() == "fov:90"
    assert not (controller.instance_dir(name) / "optionsof.txt").exists()


def test_hard_reinstall_keeps_only_config(controller: InstanceController) -> None:
    instance_dir = _existing(controller, "Broken")
    (instance_dir / "mods").mkdir()
    (instance_dir / "mods" / "leftover.jar").write_bytes(b"x")
    (instance_dir / "options.txt").write_text("keep me not")

    async def scenario():
        return await controller.reinstall("Broken", hard=True)

    assert asyncio.run(scenario()) is InstallOutcome.READY
    assert not (instance_dir / "mods").exists()
    assert not (instance_dir / "options.txt").exists()
    assert (instance_dir / "versions" / "1.20.1" / "1.20.1.jar").is_file()


def test_reinstall_of_unknown_instance_raises(controller: InstanceController) -> None:
    with pytest.raises(InstanceNotFoundError):
        controller.reinstall("Nope")


def test_migrate_updates_target(controller: InstanceController, fake_client) -> None:
    _existing(
        controller,
        "Modded",
        loader=LoaderFamily.FABRIC,
        loader_version="0.14.21",
        version_id="fabric-loader-0.14.21-1.20.1",
    )
    fake_client.loader_versions[LoaderFamily.FABRIC] = ["0.15.0"]
    fake_client.profiles[(LoaderFamily.FABRIC, "1.21", "0.15.0")] = {
        "id": "fabric-loader-0.15.0-1.21",
        "inheritsFrom": "1.21",
    }

    async def scenario():
        return await controller.migrate("Modded", version="1.21")

    assert asyncio.run(scenario()) is InstallOutcome.READY
    config = controller.get_instance("Modded")
    assert config.version == "1.21"
    assert config.loader is LoaderFamily.FABRIC
    assert config.loader_version == "0.15.0"
    assert config.version_id == "fabric-loader-0.15.0-1.21"


def test_delete_instance(controller: InstanceController, events) -> None:
    instance_dir = _existing(controller, "Gone")
    (instance_dir / "saves").mkdir()

    assert asyncio.run(controller.delete_instance("Gone")) is True
    assert not instance_dir.exists()
    assert ("Gone", "deleted", "") in events.statuses
    assert asyncio.run(controller.delete_instance("Gone")) is False


def test_delete_aborts_running_install(controller: InstanceController) -> None:
    async def scenario():
        name, task = controller.create_instance("Busy", "1.20.1")
        deleted = await controller.delete_instance(name)
        return deleted, await task

    deleted, outcome = asyncio.run(scenario())

    assert deleted is True
    assert outcome is InstallOutcome.STOPPED
    assert not controller.instance_dir("Busy").exists()
    assert controller.registry.get("Busy") is None


def test_list_content_enriches_from_registry(
    controller: InstanceController, fake_client, content_cache
) -> None:
    instance_dir = _existing(controller, "Modded", loader=LoaderFamily.FABRIC)
    mods = instance_dir / "mods"
    mods.mkdir()
    fake_client.add_project_version(
        "lithium", "l1", "lithium.jar", b"lithium", ["fabric"], ["1.20.1"], "0.11.2"
    )
    fake_client.projects["lithium"] = RegistryProject(
        id="lithium", title="Lithium", icon_url="https://cdn.test/lithium.png"
    )
    (mods / "lithium.jar").write_bytes(b"lithium")
    (mods / "custom.jar.disabled").write_bytes(b"mine")
    (mods / "notes.txt").write_text("ignored")

    items = asyncio.run(controller.list_content("Modded"))

    assert [item.filename for item in items] == ["custom.jar.disabled", "lithium.jar"]
    custom, lithium = items
    assert custom.enabled is False
    assert custom.project_id is None
    assert custom.sha1 == hashlib.sha1(b"mine").hexdigest()
    assert lithium.title == "Lithium"
    assert lithium.version == "0.11.2"
    assert lithium.icon == "https://cdn.test/lithium.png"
    assert content_cache.path.is_file()
    assert content_cache.lookup("lithium.jar", 7).title == "Lithium"


def test_list_content_serves_cached_metadata(controller: InstanceController, fake_client) -> None:
    instance_dir = _existing(controller, "Modded")
    (instance_dir / "mods").mkdir()
    (instance_dir / "mods" / "lithium.jar").write_bytes(b"lithium")
    fake_client.add_project_version(
        "lithium", "l1", "lithium.jar", b"lithium", ["fabric"], ["1.20.1"]
    )
    fake_client.projects["lithium"] = RegistryProject(id="lithium", title="Lithium")
    asyncio.run(controller.list_content("Modded"))
    fake_client.versions_by_hash.clear()

    items = asyncio.run(controller.list_content("Modded"))

    assert items[0].title == "Lithium"


def test_list_content_resource_pack_folders(controller: InstanceController) -> None:
    instance_dir = _existing(controller, "Packs")
    packs = instance_dir / ContentKind.RESOURCE_PACK.value
    (packs / "Faithful").mkdir(parents=True)

    items = asyncio.run(controller.list_content("Packs", ContentKind.RESOURCE_PACK))

    assert [(item.filename, item.size) for item in items] == [("Faithful", 0)]


def test_list_content_of_unknown_instance(controller: InstanceController) -> None:
    with pytest.raises(InstanceNotFoundError):
        asyncio.run(controller.list_content("Nope"))


def test_read_install_log(controller: InstanceController) -> None:
    instance_dir = _existing(controller, "Logged")
    assert controller.read_install_log("Logged") == ""
    (instance_dir / "install.log").write_text("line one\n")
    assert controller.read_install_log("Logged") == "line one\n"
    with pytest.raises(InstanceNotFoundError):
        controller.read_install_log("Nope")


def test_loader_versions(controller: InstanceController, fake_client) -> None:
    fake_client.loader_versions[LoaderFamily.QUILT] = ["0.23.0", "0.22.0"]

    assert asyncio.run(controller.loader_versions("vanilla", "1.20.1")) == []
    assert asyncio.run(controller.loader_versions("Quilt", "1.20.1")) == ["0.23.0", "0.22.0"]


def test_list_instances_skips_invalid_configs(controller: InstanceController) -> None:
    _existing(controller, "Good")
    bad = controller.instance_dir("Bad")
    bad.mkdir(parents=True)
    (bad / "instance.json").write_text("{not json")
    controller.instance_dir("Loose").mkdir()

    assert [c.name for c in controller.list_instances()] == ["Good"]
    assert read_instance_config(controller.instance_dir("Good")).status is InstanceStatus.READY


def _hold_downloads(fake_client):
    """Make downloads wait for a gate; returns (reached, gate) events."""
    reached = asyncio.Event()
    gate = asyncio.Event()
    original = fake_client.download_file

    async def held(url, dest):
        reached.set()
        await gate.wait()
        return await original(url, dest)

    fake_client.download_file = held
    return reached, gate


def test_abort_marks_running_install_stopped(
    controller: InstanceController, fake_client, events
) -> None:
    async def scenario():
        reached, gate = _hold_downloads(fake_client)
        name, task = controller.create_instance("Busy", "1.20.1")
        await reached.wait()
        first = controller.abort(name)
        second = controller.abort(name)
        gate.set()
        return first, second, await task

    first, second, outcome = asyncio.run(scenario())

    assert first is True
    assert second is False
    assert outcome is InstallOutcome.STOPPED
    config = controller.get_instance("Busy")
    assert config.status is InstanceStatus.STOPPED
    assert config.error is None
    assert [status for _, status, _ in events.statuses] == ["installing", "stopped"]
    assert controller.registry.get("Busy") is None


def test_abort_without_running_install(controller: InstanceController, events) -> None:
    _existing(controller, "Idle")

    assert controller.abort("Idle") is False
    assert controller.get_instance("Idle").status is InstanceStatus.READY
    assert events.statuses == []


def test_abort_all_stops_every_running_install(controller: InstanceController, fake_client) -> None:
    async def scenario():
        reached, gate = _hold_downloads(fake_client)
        _, first = controller.create_instance("One", "1.20.1")
        _, second = controller.create_instance("Two", "1.20.1")
        await reached.wait()
        stopped = controller.abort_all()
        gate.set()
        return stopped, await asyncio.gather(first, second)

    stopped, outcomes = asyncio.run(scenario())

    assert sorted(stopped) == ["One", "Two"]
    assert outcomes == [InstallOutcome.STOPPED, InstallOutcome.STOPPED]
    assert {c.name: c.status for c in controller.list_instances()} == {
        "One": InstanceStatus.STOPPED,
        "Two": InstanceStatus.STOPPED,
    }


def test_check_updates_reports_newer_compatible_versions(
    controller: InstanceController, fake_client
) -> None:
    instance_dir = _existing(controller, "Modded", loader=LoaderFamily.FABRIC)
    mods = instance_dir / "mods"
    mods.mkdir()
    fake_client.add_project_version(
        "sodium", "s2", "sodium-0.5.jar", b"sodium-new", ["fabric"], ["1.20.1"], "0.5"
    )
    fake_client.add_project_version(
        "sodium", "s1", "sodium-0.4.jar", b"sodium-old", ["fabric"], ["1.20.1"], "0.4"
    )
    fake_client.add_project_version(
        "lithium", "l1", "lithium.jar", b"lithium", ["fabric"], ["1.20.1"], "0.11"
    )
    fake_client.add_project_version(
        "iris", "i2", "iris-2.jar", b"iris-new", ["quilt"], ["1.20.1"], "2.0"
    )
    fake_client.add_project_version(
        "iris", "i1", "iris-1.jar", b"iris-old", ["fabric"], ["1.20.1"], "1.0"
    )
    (mods / "sodium-0.4.jar").write_bytes(b"sodium-old")
    (mods / "lithium.jar").write_bytes(b"lithium")
    (mods / "iris-1.jar").write_bytes(b"iris-old")
    (mods / "homemade.jar").write_bytes(b"not on the registry")

    updates = asyncio.run(controller.check_updates("Modded"))

    assert [(u.filename, u.current_version, u.new_version) for u in updates] == [
        ("sodium-0.4.jar", "0.4", "0.5")
    ]
    assert updates[0].candidate.new_filename == "sodium-0.5.jar"
    assert updates[0].candidate.url == "https://cdn.test/sodium/s2/sodium-0.5.jar"
    assert sorted(p.name for p in mods.iterdir()) == [
        "homemade.jar",
        "iris-1.jar",
        "lithium.jar",
        "sodium-0.4.jar",
    ]


def test_check_updates_ignores_loader_for_resource_packs(
    controller: InstanceController, fake_client
) -> None:
    instance_dir = _existing(controller, "Packs", loader=LoaderFamily.FABRIC)
    packs = instance_dir / ContentKind.RESOURCE_PACK.value
    packs.mkdir()
    fake_client.add_project_version(
        "faithful", "f2", "faithful-2.zip", b"faithful-new", ["minecraft"], ["1.20.1"], "2"
    )
    fake_client.add_project_version(
        "faithful", "f1", "faithful-1.zip", b"faithful-old", ["minecraft"], ["1.20.1"], "1"
    )
    (packs / "faithful-1.zip").write_bytes(b"faithful-old")

    updates = asyncio.run(controller.check_updates("Packs", ContentKind.RESOURCE_PACK))

    assert [u.new_version for u in updates] == ["2"]


def test_check_updates_of_unknown_instance(controller: InstanceController) -> None:
    with pytest.raises(InstanceNotFoundError):
        asyncio.run(controller.check_updates("Nope"))
