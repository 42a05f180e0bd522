"""
Managed enforcer files.

Builds the ``jail.local`` that carries the operator's jail defaults and wires
the callback action into every jail, plus the action file that posts ban and
unban notifications back to the control plane.
"""

from ..settings.models import AppSettings, default_callback_url, DEFAULT_PORT
from ..settings.store import validate_host_id

ACTION_NAME = "f2bctl-notify"
ACTION_FILE = f"action.d/{ACTION_NAME}.conf"
JAIL_LOCAL_FILE = "jail.local"

# A jail.local containing this string was written by us and may be replaced.
MANAGED_MARKER = ACTION_NAME

JAIL_LOCAL_BANNER = """\
################################################################################
# f2bctl Managed Configuration
#
# WARNING: This file is automatically managed by f2bctl.
# DO NOT EDIT THIS FILE MANUALLY - your changes will be overwritten.
#
# This file overrides settings from /etc/fail2ban/jail.conf
# Custom jail configurations should be placed in /etc/fail2ban/jail.d/
################################################################################

"""

ACTION_TEMPLATE = """\
[Definition]

# Bypasses ban/unban for restored bans
norestored = 1

# Notify the control plane when an IP is banned.
actionban = /usr/bin/curl{insecure} -X POST {callback_url}/api/ban \\
     -H "Content-Type: application/json" \\
     -H "X-Callback-Secret: {secret}" \\
     -d "$(jq -n --arg serverId '{host_id}' \\
                 --arg ip '<ip>' \\
                 --arg jail '<name>' \\
                 --arg hostname '<fq-hostname>' \\
                 --arg failures '<failures>' \\
                 --arg logs "$(tac <logpath> | grep <grepopts> -wF <ip>)" \\
                 '{{serverId: $serverId, ip: $ip, jail: $jail, hostname: $hostname, failures: $failures, logs: $logs}}')"

# Notify the control plane when an IP is unbanned.
actionunban = /usr/bin/curl{insecure} -X POST {callback_url}/api/unban \\
     -H "Content-Type: application/json" \\
     -H "X-Callback-Secret: {secret}" \\
     -d "$(jq -n --arg serverId '{host_id}' \\
                 --arg ip '<ip>' \\
                 --arg jail '<name>' \\
                 --arg hostname '<fq-hostname>' \\
                 '{{serverId: $serverId, ip: $ip, jail: $jail, hostname: $hostname}}')"

[Init]

# Default name of the chain
name = default

# Path to log files containing relevant lines for the abuser IP
logpath = /dev/null

# Number of log lines to include in the callback
grepmax = {grepmax}
grepopts = -m <grepmax>
"""


def _bool(value: bool) -> str:
    return "true" if value else "false"


def build_jail_local(settings: AppSettings) -> str:
    """Content of the managed ``jail.local`` for ``settings``."""
    ignore_ips = " ".join(settings.ignore_ips) or "127.0.0.1/8 ::1"
    lines = [
        "[DEFAULT]",
        f"enabled = {_bool(settings.default_jail_enable)}",
        f"bantime.increment = {_bool(settings.bantime_increment)}",
        f"ignoreip = {ignore_ips}",
        f"bantime = {settings.bantime}",
        f"findtime = {settings.findtime}",
        f"maxretry = {settings.maxretry}",
        f"banaction = {settings.banaction or 'nftables-multiport'}",
        f"banaction_allports = {settings.banaction_allports or 'nftables-allports'}",
        f"chain = {settings.chain or 'INPUT'}",
    ]
    if settings.bantime_rndtime:
        lines.append(f"bantime.rndtime = {settings.bantime_rndtime}")

    default_section = "\n".join(lines) + "\n\n"
    action_chain = (
        "# Callback action for f2bctl\n"
        "action_mwlg = %(action_)s\n"
        f'             {ACTION_NAME}[logpath="%(logpath)s", chain="%(chain)s"]\n'
        "\n"
    )
    action_override = (
        "# Apply the callback action to every jail\n"
        "action = %(action_mwlg)s\n"
    )
    return JAIL_LOCAL_BANNER + default_section + action_chain + action_override


def build_action_config(callback_url: str, host_id: str, settings: AppSettings) -> str:
    """Content of ``action.d/f2bctl-notify.conf`` for one managed host."""
    url = (callback_url or "").strip().rstrip("/") or default_callback_url(DEFAULT_PORT)
    return ACTION_TEMPLATE.format(
        insecure=" -k" if url.lower().startswith("https://") else "",
        callback_url=url,
        secret=settings.callback_secret,
        host_id=validate_host_id(host_id or "local"),
        grepmax=settings.max_log_lines,
    )


def is_managed(content: str) -> bool:
    return MANAGED_MARKER in content


def may_overwrite_jail_local(existing: str) -> bool:
    """An empty or previously managed ``jail.local`` may be replaced."""
    return not existing.strip() or is_managed(existing)
