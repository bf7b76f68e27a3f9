"""
helpers.py - Data classes, parsers and the SSH transport for the field access point
"""

import re
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import paramiko


SSH_PORT = 22
CONNECT_TIMEOUT_SEC = 1
COMMAND_TIMEOUT_SEC = 30
COMMAND_POLL_INTERVAL_SEC = 0.05
RECV_BUFFER_SIZE = 32768

NUM_STATIONS = 6
MIN_WPA_KEY_LENGTH = 8
MAX_WPA_KEY_LENGTH = 63
# WPA passphrases are printable ASCII
WPA_KEY_RE = re.compile(r"[\x20-\x7e]+")

BANDWIDTH_WINDOW_SEC = 5
BANDWIDTH_MIN_SAMPLES = 7

DEVICE_LINKSYS = 'linksys'
DEVICE_VIVID = 'vivid'
DEVICE_KINDS = (DEVICE_LINKSYS, DEVICE_VIVID)

# Interfaces carrying the six team networks, in station order
STATION_INTERFACES = {
    DEVICE_VIVID: ('ath1', 'ath11', 'ath12', 'ath13', 'ath14', 'ath15'),
    DEVICE_LINKSYS: ('ath0', 'ath0-1', 'ath0-2', 'ath0-3', 'ath0-4', 'ath0-5'),
}


# ============================================================================
# Errors
# ============================================================================

class AccessPointError(Exception):
    """Base class for everything the access point layer raises"""


class TransportError(AccessPointError):
    """The device could not be reached or the command did not succeed"""


class ConnectFailed(TransportError):
    pass


class SessionFailed(TransportError):
    pass


class CommandTimeout(TransportError, TimeoutError):
    pass


class CommandError(TransportError):
    pass


class ConfigurationError(AccessPointError, ValueError):
    """A station configuration could not be generated from the given input"""


class InvalidPosition(ConfigurationError):
    pass


class InvalidCredential(ConfigurationError):
    pass


class MalformedStatus(AccessPointError):
    pass


class QueueFull(AccessPointError):
    pass


# ============================================================================
# Data Classes
# ============================================================================

@dataclass(frozen=True)
class Team:
    """The parts of a competition team the access point needs"""
    id: int
    wpa_key: str


@dataclass(frozen=True)
class StationStatus:
    """Observed state of one team network"""
    team_id: int = 0
    radio_linked: bool = False
    mbits: float = 0.0


@dataclass(frozen=True)
class AccessPointSettings:
    """Connection and radio settings for the access point"""
    device_kind: str
    address: str
    username: str
    password: str
    channel: int
    network_security_enabled: bool

    @property
    def is_vivid_type(self) -> bool:
        return self.device_kind == DEVICE_VIVID


def station_interfaces(device_kind: str) -> Sequence[str]:
    """Return the interface names of stations 1-6 for the given device"""
    try:
        return STATION_INTERFACES[device_kind]
    except KeyError:
        raise ValueError(f"Unknown access point type '{device_kind}'") from None


# ============================================================================
# iwinfo Parser
# ============================================================================

SSID_RE = re.compile(r'ESSID: "([-\w ]*)"')
LINK_QUALITY_RE = re.compile(r'Link Quality: ([-\w ]+)/([-\w ]+)')


def get_indent(line: str) -> int:
    """Count leading spaces"""
    return len(line) - len(line.lstrip())


def split_iwinfo_blocks(output: str) -> Dict[str, str]:
    """
    Split 'iwinfo' output into per-interface blocks

    Each block starts with an unindented line beginning with the interface
    name; the indented lines below it belong to the same interface.

    Returns:
        {interface_name: block_text}
    """
    blocks: Dict[str, List[str]] = {}
    current = None

    for line in output.split('\n'):
        if not line.strip():
            continue

        if get_indent(line) == 0:
            current = line.split(None, 1)[0]
            blocks[current] = [line]
        elif current is not None:
            blocks[current].append(line)

    return {name: '\n'.join(lines) for name, lines in blocks.items()}


def team_id_from_ssid(ssid: str) -> int:
    # Placeholder networks like "no-team-3" resolve to no team
    return int(ssid) if ssid.isdecimal() else 0


def _station_status(ssid: str, link_quality: str) -> StationStatus:
    return StationStatus(
        team_id=team_id_from_ssid(ssid),
        radio_linked=link_quality != 'unknown'
    )


def _decode_by_interface(blocks: Dict[str, str], interfaces: Sequence[str]) -> Optional[List[StationStatus]]:
    statuses = []
    for interface in interfaces:
        block = blocks.get(interface)
        if block is None:
            return None

        ssid = SSID_RE.search(block)
        link_quality = LINK_QUALITY_RE.search(block)
        if ssid is None or link_quality is None:
            return None

        statuses.append(_station_status(ssid.group(1), link_quality.group(1)))

    return statuses


def decode_wifi_info(wifi_info: str, interfaces: Optional[Sequence[str]] = None) -> List[StationStatus]:
    """
    Parse 'iwinfo' output into one StationStatus per team network

    When interfaces is given and every one of them has its own block in the
    output, stations are matched by interface name. Otherwise the n-th ESSID
    and n-th link quality in the output belong to station n.

    Raises:
        MalformedStatus: fewer than six networks could be found
    """
    if interfaces is not None:
        statuses = _decode_by_interface(split_iwinfo_blocks(wifi_info), interfaces)
        if statuses is not None:
            return statuses

    ssids = SSID_RE.findall(wifi_info)
    link_qualities = LINK_QUALITY_RE.findall(wifi_info)

    # There should be six networks present, one for each team on the 5GHz radio
    if len(ssids) < NUM_STATIONS or len(link_qualities) < NUM_STATIONS:
        raise MalformedStatus(
            f"Could not parse wifi info; expected {NUM_STATIONS} team networks, "
            f"got {len(ssids)} SSIDs and {len(link_qualities)} link qualities"
        )

    return [
        _station_status(ssids[i], link_qualities[i][0])
        for i in range(NUM_STATIONS)
    ]


# ============================================================================
# luci-bwc Parser
# ============================================================================

def _parse_sample(sample: str) -> List[int]:
    """Parse one '[ts, rx_bytes, rx_packets, tx_bytes, tx_packets]' sample"""
    fields = sample.strip().lstrip('[').rstrip(']').split(',')
    return [int(field.strip()) for field in fields]


def parse_btu(response: str) -> float:
    """
    Parse 'luci-bwc -i <iface>' output into the 5 second average bandwidth

    Returns:
        Megabits per second over the window, or 0.0 while fewer than seven
        samples are available
    """
    samples = response.strip().split('],')
    if len(samples) < BANDWIDTH_MIN_SAMPLES:
        return 0.0

    try:
        baseline = _parse_sample(samples[-6])
        latest = _parse_sample(samples[-1])
        rx_bytes = latest[1] - baseline[1]
        tx_bytes = latest[3] - baseline[3]
    except (ValueError, IndexError):
        return 0.0

    return (rx_bytes + tx_bytes) * 0.000008 / BANDWIDTH_WINDOW_SEC


# ============================================================================
# uci Configuration Generation
# ============================================================================

def placeholder_name(position: int) -> str:
    return f"no-team-{position}"


def uci_quote(value: str) -> str:
    """Single-quote a value for a uci batch, closing and reopening around embedded quotes"""
    return "'" + value.replace("'", "'\\''") + "'"


def generate_team_config(team: Optional[Team], position: int, device_kind: str) -> List[str]:
    """
    Produce the uci directives that put the given team on station 'position'

    Stations without a team get a placeholder SSID and key so that all six
    radios stay up.

    Raises:
        InvalidPosition: position is not 1-6
        InvalidCredential: the team's WPA key is not 8-63 printable ASCII characters
    """
    if position < 1 or position > NUM_STATIONS:
        raise InvalidPosition(f"invalid team position {position}")

    if team is None:
        ssid = placeholder_name(position)
        key = placeholder_name(position)
    else:
        if len(team.wpa_key) < MIN_WPA_KEY_LENGTH or len(team.wpa_key) > MAX_WPA_KEY_LENGTH:
            raise InvalidCredential(f"invalid WPA key '{team.wpa_key}' configured for team {team.id}")
        if not WPA_KEY_RE.fullmatch(team.wpa_key):
            raise InvalidCredential(f"WPA key for team {team.id} contains non-printable characters")
        ssid = str(team.id)
        key = team.wpa_key

    commands = [
        f"set wireless.@wifi-iface[{position}].disabled='0'",
        f"set wireless.@wifi-iface[{position}].ssid={uci_quote(ssid)}",
        f"set wireless.@wifi-iface[{position}].key={uci_quote(key)}",
    ]
    if device_kind == DEVICE_VIVID:
        # WPA3 on the VH-109 needs the SAE password as well
        commands.append(f"set wireless.@wifi-iface[{position}].sae_password={uci_quote(key)}")

    return commands


def add_configuration_header(commands: Sequence[str]) -> str:
    return "uci batch <<'ENDCONFIG'\n{}\nENDCONFIG\n".format('\n'.join(commands))


def generate_admin_config(channel: int) -> str:
    """Build the command that sets the team radio channel and restarts the radio"""
    commands = [
        f"set wireless.radio0.channel='{channel}'",
        "commit wireless",
    ]
    return "uci batch <<'ENDCONFIG' && wifi radio0\n{}\nENDCONFIG\n".format('\n'.join(commands))


# ============================================================================
# SSH Helper
# ============================================================================

class SSHConnection:
    """One password-authenticated SSH connection to the access point"""

    def __init__(
        self,
        hostname: str,
        username: str,
        password: str,
        port: int = SSH_PORT,
        connect_timeout: float = CONNECT_TIMEOUT_SEC,
        command_timeout: float = COMMAND_TIMEOUT_SEC
    ):
        self.hostname = hostname
        self.username = username
        self.password = password
        self.port = port
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.client = None

    def __enter__(self):
        self.client = paramiko.SSHClient()
        self.client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        try:
            self.client.connect(
                self.hostname,
                port=self.port,
                username=self.username,
                password=self.password,
                look_for_keys=False,
                allow_agent=False,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout
            )
        except (paramiko.SSHException, OSError) as e:
            self.close()
            raise ConnectFailed(f"Failed to connect to {self.hostname}:{self.port}: {e}") from e

        return self

    def __exit__(self, *args):
        self.close()

    def close(self):
        if self.client:
            self.client.close()
            self.client = None

    def _open_channel(self):
        transport = self.client.get_transport() if self.client else None
        if transport is None or not transport.is_active():
            raise SessionFailed(f"No active SSH transport to {self.hostname}")

        try:
            return transport.open_session(timeout=self.connect_timeout)
        except (paramiko.SSHException, OSError) as e:
            raise SessionFailed(f"Failed to open SSH session on {self.hostname}: {e}") from e

    def run(self, command: str) -> str:
        """
        Execute command and return its output

        The command is abandoned once command_timeout has passed; the channel
        and connection are closed before CommandTimeout is raised.
        """
        channel = self._open_channel()
        try:
            channel.exec_command(command)
        except (paramiko.SSHException, OSError) as e:
            channel.close()
            raise SessionFailed(f"Failed to start command on {self.hostname}: {e}") from e

        deadline = time.monotonic() + self.command_timeout
        stdout, stderr = [], []

        while True:
            while channel.recv_ready():
                stdout.append(channel.recv(RECV_BUFFER_SIZE))
            while channel.recv_stderr_ready():
                stderr.append(channel.recv_stderr(RECV_BUFFER_SIZE))

            if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                break

            if time.monotonic() >= deadline:
                channel.close()
                self.close()
                raise CommandTimeout(f"WiFi SSH command timed out after {self.command_timeout} seconds")

            time.sleep(COMMAND_POLL_INTERVAL_SEC)

        exit_status = channel.recv_exit_status()
        channel.close()

        output = b''.join(stdout).decode('utf-8', errors='replace')
        error = b''.join(stderr).decode('utf-8', errors='replace')

        if exit_status != 0:
            raise CommandError(f"Command exited with status {exit_status}: {error.strip()}")
        if error and 'warning' not in error.lower():
            raise CommandError(f"Command failed: {error.strip()}")

        return output


def run_command(settings: AccessPointSettings, command: str) -> str:
    """Log into the access point, run one command and disconnect"""
    with SSHConnection(settings.address, settings.username, settings.password) as ssh:
        return ssh.run(command)
