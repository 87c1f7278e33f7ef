"""Names, remote layout, and rendered files for a managed server."""

import posixpath
import re
import secrets

from mcfleet.core.config import settings
from mcfleet.services.variants import SERVER_JAR, LaunchMode

_NAME_UNSAFE = re.compile(r"[^a-z0-9-]")


def generate_internal_name(display_name: str) -> str:
    """``mc-<sanitized name, max 20>-<8 hex>``; unique without coordination."""
    safe = _NAME_UNSAFE.sub("-", display_name.lower())
    safe = re.sub(r"-+", "-", safe).strip("-")[:20].strip("-") or "server"
    return f"mc-{safe}-{secrets.token_hex(4)}"


def minecraft_root(ssh_user: str, template: str | None = None) -> str:
    return (template or settings.MINECRAFT_ROOT_TEMPLATE).format(user=ssh_user)


def server_path(ssh_user: str, internal_name: str, template: str | None = None) -> str:
    return posixpath.join(minecraft_root(ssh_user, template), internal_name)


def render_server_properties(
    *,
    game_port: int,
    console_port: int,
    console_secret: str,
    max_players: int,
    motd: str,
) -> str:
    # motd is a single properties line; drop anything that would start a new one
    motd = " ".join(motd.split())
    properties = {
        "server-port": game_port,
        "max-players": max_players,
        "motd": motd,
        "online-mode": "true",
        "difficulty": "normal",
        "gamemode": "survival",
        "pvp": "true",
        "enable-rcon": "true",
        "rcon.port": console_port,
        "rcon.password": console_secret,
        "view-distance": 10,
    }
    return "\n".join(f"{key}={value}" for key, value in properties.items()) + "\n"


def render_unit(
    *,
    display_name: str,
    ssh_user: str,
    path: str,
    memory_mb: int,
    launch_mode: LaunchMode,
) -> str:
    if launch_mode is LaunchMode.SCRIPT:
        exec_start = f"{path}/run.sh nogui"
    else:
        exec_start = f"/usr/bin/java -Xmx{memory_mb}M -Xms{memory_mb}M -jar {path}/{SERVER_JAR} nogui"
    description = " ".join(display_name.split())
    return (
        "[Unit]\n"
        f"Description=Minecraft Server - {description}\n"
        "After=network.target\n"
        "\n"
        "[Service]\n"
        "Type=simple\n"
        f"User={ssh_user}\n"
        f"WorkingDirectory={path}\n"
        f"ExecStart={exec_start}\n"
        "Restart=on-failure\n"
        "RestartSec=10\n"
        "\n"
        "[Install]\n"
        "WantedBy=multi-user.target\n"
    )
