"""
fail2ban-client and fail2ban-regex command lines and output parsing.

Connectors that drive fail2ban through a shell (locally or over SSH) build
their argument vectors here and hand the raw output back for parsing, so the
two transports interpret the daemon identically.
"""

from typing import List, Optional

CLIENT_BINARY = "fail2ban-client"
REGEX_BINARY = "fail2ban-regex"

RELOAD_ERROR_MARKERS = ("Errors in jail", "Unable to read the filter")

# fail2ban-regex --print-all-matched prefixes every matched line with this.
MATCH_PREFIX = "|  "


def client_command(socket_path: str, *args: str) -> List[str]:
    """Argument vector for ``fail2ban-client [-s socket] args...``."""
    argv = [CLIENT_BINARY]
    if socket_path:
        argv.extend(["-s", socket_path])
    argv.extend(args)
    return argv


def status_command(socket_path: str, jail: Optional[str] = None) -> List[str]:
    if jail:
        return client_command(socket_path, "status", jail)
    return client_command(socket_path, "status")


def ban_command(socket_path: str, jail: str, ip: str) -> List[str]:
    return client_command(socket_path, "set", jail, "banip", ip)


def unban_command(socket_path: str, jail: str, ip: str) -> List[str]:
    return client_command(socket_path, "set", jail, "unbanip", ip)


def reload_command(socket_path: str) -> List[str]:
    return client_command(socket_path, "reload")


def ping_command(socket_path: str) -> List[str]:
    return client_command(socket_path, "ping")


def regex_command(log_file: str, filter_file: str) -> List[str]:
    return [REGEX_BINARY, "--print-all-matched", log_file, filter_file]


# =============================================================================
# Output Parsing
# =============================================================================


def parse_jail_list(output: str) -> List[str]:
    """
    Extract jail names from ``fail2ban-client status``.

    The daemon prints ``|- Jail list:   sshd, nginx-http-auth``.
    """
    for line in output.splitlines():
        if "Jail list:" in line:
            raw = line.split(":", 1)[1].strip()
            return [j.strip() for j in raw.split(",") if j.strip()]
    return []


def parse_banned_ips(output: str) -> List[str]:
    """Extract addresses from the ``Banned IP list:`` line of a jail status."""
    for line in output.splitlines():
        if "IP list:" in line:
            return line.split(":", 1)[1].split()
    return []


def is_pong(output: str) -> bool:
    return "pong" in output.strip().lower()


def reload_has_errors(output: str) -> bool:
    """Whether a reload that exited cleanly still reported jail errors."""
    trimmed = output.strip()
    if trimmed in ("", "OK"):
        return False
    return any(marker in output for marker in RELOAD_ERROR_MARKERS)


def parse_regex_matches(output: str) -> List[str]:
    """Matched log lines from ``fail2ban-regex --print-all-matched`` output."""
    matches = []
    for line in output.splitlines():
        if line.startswith(MATCH_PREFIX):
            matches.append(line[len(MATCH_PREFIX):].strip())
    return matches
