from enum import Enum


class LoaderFamily(str, Enum):
    VANILLA = "vanilla"
    FABRIC = "fabric"
    QUILT = "quilt"
    FORGE = "forge"
    NEOFORGE = "neoforge"

    @classmethod
    def parse(cls, value: "str | LoaderFamily | None") -> "LoaderFamily":
        """Accept loader names case-insensitively, treating empty values as vanilla."""
        if isinstance(value, LoaderFamily):
            return value
        if not value:
            return cls.VANILLA
        return cls(value.strip().lower())

    @property
    def is_modded(self) -> bool:
        return self is not LoaderFamily.VANILLA


class InstanceStatus(str, Enum):
    INSTALLING = "installing"
    READY = "ready"
    ERROR = "error"
    STOPPED = "stopped"
    DELETED = "deleted"


class ContentKind(str, Enum):
    MOD = "mods"
    RESOURCE_PACK = "resourcepacks"
    SHADER_PACK = "shaderpacks"


USER_AGENT = "Instancer/1.0 (+https://github.com/instancer/instancer)"

# Registries
MOJANG_VERSION_MANIFEST_URL = (
    "https://piston-meta.mojang.com/mc/game/version_manifest.json"
)
MODRINTH_API = "https://api.modrinth.com/v2"
FABRIC_META = "https://meta.fabricmc.net/v2"
QUILT_META = "https://meta.quiltmc.org/v3"
FORGE_MAVEN = "https://maven.minecraftforge.net/net/minecraftforge/forge"
FORGE_PROMOTIONS_URL = (
    "https://files.minecraftforge.net/net/minecraftforge/forge/promotions_slim.json"
)
NEOFORGE_MAVEN = "https://maven.neoforged.net/releases/net/neoforged/neoforge"
MINECRAFT_LIBRARIES_URL = "https://libraries.minecraft.net/"

DEFAULT_REQUEST_TIMEOUT = 60
DOWNLOAD_CHUNK_SIZE = 64 * 1024

# Files inside an installer archive that may carry the version descriptor, in order of preference
INSTALLER_DESCRIPTOR_ENTRIES = ["version.json", "install_profile.json"]

# Some installers refuse to run unless this file exists in the target directory
LAUNCHER_PROFILES_STUB = {
    "profiles": {},
    "settings": {
        "crashAssistance": True,
        "enableAdvanced": True,
        "enableAnalytics": True,
        "enableHistorical": True,
        "enableReleases": True,
        "enableSnapshots": True,
        "keepLauncherOpen": False,
        "locale": "en-us",
        "profileSorting": "last_played",
        "showGameLog": False,
        "showMenu": False,
        "soundOn": False,
    },
    "version": 3,
}

FABRIC_API_PROJECT_ID = "P7dR8mSH"

# Performance add-ons installed when the optimization setting is enabled, in install order
OPTIMIZATION_MODS: dict[LoaderFamily, list[str]] = {
    LoaderFamily.FABRIC: [
        "sodium",
        "lithium",
        "ferrite-core",
        "entityculling",
        "immediatelyfast",
    ],
    LoaderFamily.QUILT: [
        "sodium",
        "lithium",
        "ferrite-core",
        "entityculling",
    ],
    LoaderFamily.FORGE: [
        "sodium",
        "ferrite-core",
        "entityculling",
        "modernfix",
    ],
    LoaderFamily.NEOFORGE: [
        "sodium",
        "ferrite-core",
        "entityculling",
        "modernfix",
    ],
}
OPTIMIZATION_FALLBACKS: dict[str, list[str]] = {
    "sodium": ["embeddium", "rubidium"],
}

INSTANCE_CONFIG_FILE = "instance.json"
INSTALL_LOG_FILE = "install.log"
COPYABLE_SETTINGS_FILES = ["options.txt", "optionsof.txt"]
