"""
access_point.py - Keeps the field access point's team networks in sync with the match

The AccessPoint thread owns the team WiFi configuration of a Linksys WRT1900ACS
or Vivid-Hosting VH-109 running OpenWrt. Team assignments are handed in from any
thread and applied one at a time; in between, the thread polls the device for
link and bandwidth status.
"""

import logging
import threading
import time
from dataclasses import replace
from typing import Callable, Optional, Sequence, Tuple

import helpers
from helpers import (
    AccessPointError,
    AccessPointSettings,
    ConfigurationError,
    NUM_STATIONS,
    QueueFull,
    StationStatus,
    Team,
    TransportError,
)

logger = logging.getLogger(__name__)

POLL_PERIOD_SEC = 3
REQUEST_BUFFER_SIZE = 10
CONFIG_RETRY_INTERVAL_SEC = 30

EMPTY_ASSIGNMENT: Tuple[Optional[Team], ...] = (None,) * NUM_STATIONS

CommandRunner = Callable[[AccessPointSettings, str], str]


# ============================================================================
# Request Mailbox
# ============================================================================

class RequestMailbox:
    """
    Single-slot holder for the latest team assignment

    Every put overwrites the pending assignment, so only the most recent one
    is ever taken. Up to 'capacity' puts are accepted between two takes.
    """

    def __init__(self, capacity: int = REQUEST_BUFFER_SIZE):
        self.capacity = capacity
        self._pending: Optional[Tuple[Optional[Team], ...]] = None
        self._count = 0
        self._condition = threading.Condition()

    def __len__(self) -> int:
        with self._condition:
            return self._count

    def put(self, teams: Tuple[Optional[Team], ...]) -> None:
        with self._condition:
            if self._count >= self.capacity:
                raise QueueFull("WiFi config request buffer full")
            self._pending = teams
            self._count += 1
            self._condition.notify()

    def take(self, timeout: float) -> Tuple[Optional[Tuple[Optional[Team], ...]], int]:
        """
        Wait up to timeout seconds for an assignment

        Returns:
            (latest assignment or None, number of puts it stands for)
        """
        with self._condition:
            self._condition.wait_for(lambda: self._pending is not None, timeout)
            teams, count = self._pending, self._count
            self._pending = None
            self._count = 0
            return teams, count


# ============================================================================
# Access Point
# ============================================================================

class AccessPoint(threading.Thread):
    def __init__(
        self,
        command_runner: Optional[CommandRunner] = None,
        poll_period: float = POLL_PERIOD_SEC,
        retry_interval: float = CONFIG_RETRY_INTERVAL_SEC,
        request_buffer_size: int = REQUEST_BUFFER_SIZE
    ) -> None:
        super().__init__(name='access-point', daemon=True)

        self._command_runner = command_runner or helpers.run_command
        self.poll_period = poll_period
        self.retry_interval = retry_interval
        self.request_buffer_size = request_buffer_size

        self.settings: Optional[AccessPointSettings] = None
        self._requests: Optional[RequestMailbox] = None
        self._settings_lock = threading.Lock()

        self._statuses: Tuple[StationStatus, ...] = (StationStatus(),) * NUM_STATIONS
        self._status_lock = threading.Lock()
        self._initial_statuses_fetched = False

        self.config_retry_count = 0
        self.total_config_retries = 0

        self._stopped = threading.Event()

    # ------------------------------------------------------------------
    # Settings and requests (any thread)
    # ------------------------------------------------------------------

    def update_settings(
        self,
        device_kind: str,
        address: str,
        username: str,
        password: str,
        team_channel: int,
        network_security_enabled: bool
    ) -> None:
        if device_kind not in helpers.DEVICE_KINDS:
            raise ValueError(f"Unknown access point type '{device_kind}'")

        settings = AccessPointSettings(
            device_kind=device_kind,
            address=address,
            username=username,
            password=password,
            channel=team_channel,
            network_security_enabled=network_security_enabled
        )

        with self._settings_lock:
            self.settings = settings
            # The request mailbox exists from the first settings update on
            if self._requests is None:
                self._requests = RequestMailbox(self.request_buffer_size)

    @property
    def network_security_enabled(self) -> bool:
        settings = self.settings
        return settings is not None and settings.network_security_enabled

    def configure_admin_settings(self) -> None:
        """Set the team radio channel on the access point; errors go to the caller"""
        settings = self.settings
        if settings is None or not settings.network_security_enabled:
            return

        self._command_runner(settings, helpers.generate_admin_config(settings.channel))
        logger.info("Access point radio set to channel %d", settings.channel)

    def configure_team_wifi(self, teams: Sequence[Optional[Team]]) -> None:
        """
        Queue a request to set up the team networks for the given assignment

        Never blocks; raises QueueFull when the controller is too far behind
        or has not been given settings yet.
        """
        teams = tuple(teams)
        if len(teams) != NUM_STATIONS:
            raise ValueError(f"Expected {NUM_STATIONS} team slots, got {len(teams)}")

        requests = self._requests
        if requests is None:
            raise QueueFull("WiFi config request buffer not initialized")
        requests.put(teams)

    @property
    def team_wifi_statuses(self) -> Tuple[StationStatus, ...]:
        with self._status_lock:
            return self._statuses

    def get_status_snapshot(self) -> Tuple[StationStatus, ...]:
        return self.team_wifi_statuses

    @property
    def initial_statuses_fetched(self) -> bool:
        return self._initial_statuses_fetched

    def _publish_statuses(self, statuses: Sequence[StationStatus]) -> None:
        statuses = tuple(statuses)
        with self._status_lock:
            self._statuses = statuses

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    def stop(self) -> None:
        self._stopped.set()

    def run(self) -> None:
        """Loop until stopped, applying configuration requests and polling status in between"""
        logger.info("Access point controller started")

        while not self._stopped.is_set():
            try:
                self._run_once()
            except Exception:
                logger.exception("Unexpected error in access point loop")

        logger.info("Access point controller stopped")

    def _run_once(self) -> None:
        requests = self._requests
        if requests is None:
            if self._stopped.wait(self.poll_period):
                return
            teams, count = None, 0
        else:
            teams, count = requests.take(self.poll_period)

        if teams is None:
            self._poll()
            return

        if count > 1:
            logger.info("Discarding %d superseded WiFi configuration requests", count - 1)
        self.handle_team_wifi_configuration(teams)

    def _poll(self) -> None:
        settings = self.settings

        try:
            self.update_team_wifi_statuses(settings)
        except AccessPointError as e:
            logger.warning("Error getting wifi info from AP: %s", e)

        try:
            self.update_team_wifi_btu(settings)
        except AccessPointError as e:
            logger.warning("Error getting BTU info from AP: %s", e)

    def _run_best_effort(self, settings: AccessPointSettings, command: str) -> None:
        try:
            self._command_runner(settings, command)
        except TransportError as e:
            logger.warning("Ignoring failure of '%s': %s", command, e)

    # ------------------------------------------------------------------
    # Configuration cycle
    # ------------------------------------------------------------------

    def handle_team_wifi_configuration(self, teams: Sequence[Optional[Team]]) -> None:
        # One settings snapshot serves the whole cycle; updates apply to the next one
        settings = self.settings
        if settings is None or not settings.network_security_enabled:
            return

        try:
            self.update_team_wifi_statuses(settings)
        except AccessPointError as e:
            logger.warning("Could not read WiFi status before configuring: %s", e)
        else:
            if self.config_is_correct_for_teams(teams):
                logger.info("WiFi configuration is already correct; skipping configuration cycle.")
                return

        if not settings.is_vivid_type:
            # Clear the state of the radio before loading teams; the Linksys AP is crash-prone otherwise
            self.configure_teams(EMPTY_ASSIGNMENT, settings)
        self.configure_teams(teams, settings)

    def configure_teams(self, teams: Sequence[Optional[Team]], settings: Optional[AccessPointSettings] = None) -> None:
        """
        Push the given assignment to the device until it reads back correctly

        A station whose command fails is retried after retry_interval without
        starting over. There is no limit on attempts; config_retry_count and
        total_config_retries show how long the current cycle has been stuck.
        """
        settings = settings or self.settings
        self.config_retry_count = 1

        while True:
            position = 1
            while position <= NUM_STATIONS:
                try:
                    config = helpers.generate_team_config(
                        teams[position - 1], position, settings.device_kind
                    )
                except ConfigurationError as e:
                    logger.error("Failed to generate WiFi configuration: %s", e)
                    position += 1
                    continue

                command = helpers.add_configuration_header(config)
                logger.debug("Configuring access point with command: %s", command)

                try:
                    self._command_runner(settings, command)
                except TransportError as e:
                    logger.warning("Error writing team configuration to AP: %s", e)
                    self.config_retry_count += 1
                    self.total_config_retries += 1
                    time.sleep(self.retry_interval)
                    continue

                position += 1

            self._run_best_effort(settings, "uci commit wireless")
            self._run_best_effort(settings, "wifi reload")

            try:
                self.update_team_wifi_statuses(settings)
            except AccessPointError as e:
                logger.warning("Could not read WiFi status after configuring: %s", e)
            else:
                if self.config_is_correct_for_teams(teams):
                    logger.info("Successfully configured WiFi after %d attempts.", self.config_retry_count)
                    return

            logger.warning(
                "WiFi configuration still incorrect after %d attempts; trying again.", self.config_retry_count
            )
            self.config_retry_count += 1
            self.total_config_retries += 1

    def config_is_correct_for_teams(self, teams: Sequence[Optional[Team]]) -> bool:
        """Return True if the networks last read from the device match the given teams"""
        if not self._initial_statuses_fetched:
            return False

        statuses = self.team_wifi_statuses
        for status, team in zip(statuses, teams):
            expected_team_id = team.id if team is not None else 0
            if status.team_id != expected_team_id:
                return False

        return True

    # ------------------------------------------------------------------
    # Status polling
    # ------------------------------------------------------------------

    def update_team_wifi_statuses(self, settings: Optional[AccessPointSettings] = None) -> None:
        """Fetch the current network status from the access point and publish it"""
        settings = settings or self.settings
        if settings is None or not settings.network_security_enabled:
            return

        output = self._command_runner(settings, "iwinfo")
        logger.debug("Access point status: %s", output)
        decoded = helpers.decode_wifi_info(output, helpers.station_interfaces(settings.device_kind))

        previous = self.team_wifi_statuses
        # Bandwidth is sampled separately and carries over
        statuses = tuple(
            replace(status, mbits=old.mbits) for status, old in zip(decoded, previous)
        )
        self._log_link_changes(previous, statuses)
        self._publish_statuses(statuses)

        self._initial_statuses_fetched = True

    def update_team_wifi_btu(self, settings: Optional[AccessPointSettings] = None) -> None:
        """Poll the six team interfaces for bandwidth use and publish it"""
        settings = settings or self.settings
        if settings is None or not settings.network_security_enabled:
            return

        statuses = list(self.team_wifi_statuses)
        try:
            for i, interface in enumerate(helpers.station_interfaces(settings.device_kind)):
                output = self._command_runner(settings, f"luci-bwc -i {interface}")
                statuses[i] = replace(statuses[i], mbits=helpers.parse_btu(output))
        finally:
            self._publish_statuses(statuses)

    def _log_link_changes(self, previous: Sequence[StationStatus], current: Sequence[StationStatus]) -> None:
        if not self._initial_statuses_fetched:
            return

        for position, (old, new) in enumerate(zip(previous, current), start=1):
            if old.radio_linked != new.radio_linked or old.team_id != new.team_id:
                logger.info(
                    "Station %d: team %d %s",
                    position, new.team_id, "linked" if new.radio_linked else "not linked"
                )
