#!/usr/bin/env python3
"""
Field Access Point Controller

Keeps the six team networks of an OpenWrt field access point configured for
the current match and reports their link status.

Requirements:
  pip install paramiko colorama

Usage:
  1. Create/edit ap-config.json
  2. Set "dry_run": true to print the uci batches without touching the AP
  3. Run: ./main.py [config-file]
"""

import json
import logging
import os
import sys
import time
from typing import Dict, List, Optional, Sequence

from colorama import Fore, Style, init

import helpers
from access_point import AccessPoint
from helpers import ConfigurationError, QueueFull, StationStatus, Team, TransportError

# Initialize colorama
init(autoreset=True)

DEFAULT_CONFIG_FILE = 'ap-config.json'
EXAMPLE_CONFIG = {
    "device_kind": "vivid",
    "address": "10.0.100.2",
    "username": "root",
    "password": "password",
    "channel": 36,
    "security_enabled": True,
    "dry_run": True,
    "teams": [{"id": 254, "wpa_key": "aaaaaaaa"}, None, None, None, None, None]
}


# ============================================================================
# Logging
# ============================================================================

class ColorFormatter(logging.Formatter):
    """Colors log lines by level"""

    LEVEL_COLORS = {
        logging.DEBUG: Style.DIM,
        logging.WARNING: Fore.YELLOW,
        logging.ERROR: Fore.RED,
        logging.CRITICAL: Fore.RED + Style.BRIGHT,
    }

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = self.LEVEL_COLORS.get(record.levelno)
        if color:
            return f"{color}{message}{Style.RESET_ALL}"
        return message


def setup_logging(verbose: bool = False) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(ColorFormatter('%(asctime)s %(levelname)-7s %(name)s: %(message)s'))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    # paramiko logs every connection at INFO
    logging.getLogger('paramiko').setLevel(logging.WARNING)


# ============================================================================
# Configuration Loading
# ============================================================================

def load_config(config_file: str = DEFAULT_CONFIG_FILE) -> Dict:
    """Load configuration from JSON file"""

    if not os.path.exists(config_file):
        print(f"{Fore.RED}Error: Config file '{config_file}' not found!{Style.RESET_ALL}")
        print(f"\nCreate a config file with this content:")
        print(json.dumps(EXAMPLE_CONFIG, indent=2))
        sys.exit(1)

    try:
        with open(config_file, 'r') as f:
            config = json.load(f)
    except json.JSONDecodeError as e:
        print(f"{Fore.RED}Error parsing config file: {e}{Style.RESET_ALL}")
        sys.exit(1)

    # Validate required fields
    required = ['address', 'password']
    missing = [f for f in required if f not in config]

    if missing:
        print(f"{Fore.RED}Error: Missing required config fields: {', '.join(missing)}{Style.RESET_ALL}")
        sys.exit(1)

    # Set defaults
    config.setdefault('device_kind', helpers.DEVICE_VIVID)
    config.setdefault('username', 'root')
    config.setdefault('channel', 36)
    config.setdefault('security_enabled', True)
    config.setdefault('dry_run', False)
    config.setdefault('verbose', False)
    config.setdefault('status_interval', 5)
    config.setdefault('teams', [])

    if config['device_kind'] not in helpers.DEVICE_KINDS:
        print(f"{Fore.RED}Error: device_kind must be one of: {', '.join(helpers.DEVICE_KINDS)}{Style.RESET_ALL}")
        sys.exit(1)

    try:
        config['teams'] = parse_teams(config['teams'])
    except ValueError as e:
        print(f"{Fore.RED}Error in teams: {e}{Style.RESET_ALL}")
        sys.exit(1)

    return config


def parse_teams(entries: Sequence[Optional[Dict]]) -> List[Optional[Team]]:
    """Turn the 'teams' config list into a six-slot assignment, padding with empty stations"""
    if len(entries) > helpers.NUM_STATIONS:
        raise ValueError(f"at most {helpers.NUM_STATIONS} teams can be assigned, got {len(entries)}")

    teams: List[Optional[Team]] = []
    for entry in entries:
        if entry is None:
            teams.append(None)
            continue
        try:
            teams.append(Team(id=int(entry['id']), wpa_key=str(entry['wpa_key'])))
        except (KeyError, TypeError) as e:
            raise ValueError(f"team entries need 'id' and 'wpa_key': {entry!r}") from e

    teams.extend([None] * (helpers.NUM_STATIONS - len(teams)))
    return teams


# ============================================================================
# Output
# ============================================================================

def format_station(position: int, team: Optional[Team], status: StationStatus) -> str:
    expected = str(team.id) if team else '-'
    actual = str(status.team_id) if status.team_id else '-'

    if status.radio_linked:
        link = f"{Fore.GREEN}linked{Style.RESET_ALL}"
    else:
        link = f"{Fore.YELLOW}no link{Style.RESET_ALL}"

    if expected == actual:
        team_str = f"{Fore.GREEN}{actual:>6}{Style.RESET_ALL}"
    else:
        team_str = f"{Fore.RED}{actual:>6}{Style.RESET_ALL} (want {expected})"

    return f"  Station {position}: {team_str}  {link}  {status.mbits:6.2f} Mbit/s"


def print_status(ap: AccessPoint, teams: Sequence[Optional[Team]]):
    statuses = ap.get_status_snapshot()

    print(f"{Fore.CYAN}Access point status:{Style.RESET_ALL}")
    if not ap.initial_statuses_fetched:
        print(f"  {Fore.YELLOW}(no status read from the AP yet){Style.RESET_ALL}")
    for position, (team, status) in enumerate(zip(teams, statuses), start=1):
        print(format_station(position, team, status))
    if ap.config_retry_count > 1:
        print(f"  {Fore.YELLOW}Configuration attempts this cycle: {ap.config_retry_count}{Style.RESET_ALL}")


def print_dry_run(teams: Sequence[Optional[Team]], device_kind: str, channel: int):
    """Print the commands a configuration cycle would send"""

    print(f"\n{Fore.YELLOW}[DRY RUN] Would execute:{Style.RESET_ALL}")
    print(helpers.generate_admin_config(channel))

    for position, team in enumerate(teams, start=1):
        try:
            config = helpers.generate_team_config(team, position, device_kind)
        except ConfigurationError as e:
            print(f"  {Fore.RED}✗ Station {position}: {e}{Style.RESET_ALL}")
            continue
        print(helpers.add_configuration_header(config))

    print("uci commit wireless")
    print("wifi reload")


# ============================================================================
# Main
# ============================================================================

def main(argv: Optional[Sequence[str]] = None):
    argv = sys.argv[1:] if argv is None else argv

    print(f"{Fore.GREEN}{'='*70}")
    print("Field Access Point Controller")
    print(f"{'='*70}{Style.RESET_ALL}\n")

    config = load_config(argv[0] if argv else DEFAULT_CONFIG_FILE)
    setup_logging(config['verbose'])

    teams = config['teams']
    dry_run = config['dry_run']

    print(f"Configuration:")
    print(f"  Access point: {config['username']}@{config['address']} ({config['device_kind']})")
    print(f"  Channel: {config['channel']}")
    print(f"  Teams: {', '.join(str(t.id) if t else '-' for t in teams)}")
    print(f"  Mode: {Fore.YELLOW}DRY RUN{Style.RESET_ALL}" if dry_run else f"  Mode: {Fore.RED}LIVE (will apply changes){Style.RESET_ALL}")
    print()

    if dry_run:
        print_dry_run(teams, config['device_kind'], config['channel'])
        return

    ap = AccessPoint()
    ap.update_settings(
        config['device_kind'],
        config['address'],
        config['username'],
        config['password'],
        config['channel'],
        config['security_enabled']
    )

    print(f"{Fore.YELLOW}Step 1: Configuring radio channel...{Style.RESET_ALL}", end=" ", flush=True)
    try:
        ap.configure_admin_settings()
        print(f"{Fore.GREEN}OK{Style.RESET_ALL}")
    except TransportError as e:
        print(f"{Fore.RED}ERROR: {e}{Style.RESET_ALL}")

    print(f"{Fore.YELLOW}Step 2: Configuring team networks...{Style.RESET_ALL}\n")
    ap.start()
    try:
        ap.configure_team_wifi(teams)
    except QueueFull as e:
        print(f"{Fore.RED}✗ Error: {e}{Style.RESET_ALL}")

    try:
        while ap.is_alive():
            time.sleep(config['status_interval'])
            print_status(ap, teams)
    finally:
        ap.stop()


def cli():
    try:
        main()
    except KeyboardInterrupt:
        print(f"\n\n{Fore.YELLOW}Interrupted by user{Style.RESET_ALL}")
        sys.exit(130)
    except Exception as e:
        print(f"\n{Fore.RED}Fatal error: {e}{Style.RESET_ALL}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    cli()
