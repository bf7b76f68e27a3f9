import re
import threading
import time

import pytest

import helpers
from helpers import DEVICE_VIVID, NUM_STATIONS, placeholder_name, station_interfaces


SET_RE = re.compile(r"set wireless\.@wifi-iface\[(\d)\]\.(\w+)='([^']*)'")

IWINFO_BLOCK = """{interface}     ESSID: "{ssid}"
          Access Point: 00:11:22:33:44:{index:02d}
          Mode: Master  Channel: 36 (5.180 GHz)  HT Mode: VHT80
          Tx-Power: 23 dBm  Link Quality: {quality}/70
          Signal: -42 dBm  Noise: -95 dBm
          Bit Rate: 6.0 MBit/s
          Encryption: WPA2 PSK (CCMP)
"""


def wait_for(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return False


class FakeDevice:
    """
    In-memory OpenWrt access point usable as an AccessPoint command runner

    uci batches are staged, 'uci commit wireless' commits them and 'wifi
    reload' makes the committed SSIDs visible to 'iwinfo'.
    """

    def __init__(self, device_kind=DEVICE_VIVID):
        self.interfaces = station_interfaces(device_kind)
        self.staged = {}
        self.committed = [placeholder_name(p) for p in range(1, NUM_STATIONS + 1)]
        self.live = list(self.committed)
        self.commands = []
        self.batches = []
        self.bandwidth = {}
        self.ignored_reloads = 0
        self._failures = []
        self._lock = threading.Lock()

    def set_live(self, ssids):
        self.committed = list(ssids)
        self.live = list(ssids)

    def fail(self, substring, error, times=1):
        """Raise error on the next 'times' commands containing substring"""
        for _ in range(times):
            self._failures.append((substring, error))

    def __call__(self, settings, command):
        with self._lock:
            self.commands.append(command)

            for i, (substring, error) in enumerate(self._failures):
                if substring in command:
                    del self._failures[i]
                    raise error

            if command.startswith('uci batch'):
                written = {}
                for position, field, value in SET_RE.findall(command):
                    written.setdefault(int(position), {})[field] = value
                    self.staged.setdefault(int(position), {})[field] = value
                self.batches.append(written)
                return ''
            if command == 'uci commit wireless':
                for position, fields in self.staged.items():
                    if 'ssid' in fields:
                        self.committed[position - 1] = fields['ssid']
                self.staged = {}
                return ''
            if command == 'wifi reload':
                if self.ignored_reloads:
                    self.ignored_reloads -= 1
                else:
                    self.live = list(self.committed)
                return ''
            if command == 'iwinfo':
                return self.render_iwinfo()
            if command.startswith('luci-bwc -i '):
                return self.bandwidth.get(command.split()[-1], '')

            raise helpers.CommandError(f"unexpected command: {command}")

    def render_iwinfo(self):
        blocks = []
        for index, (interface, ssid) in enumerate(zip(self.interfaces, self.live)):
            quality = '70' if ssid.isdigit() else 'unknown'
            blocks.append(IWINFO_BLOCK.format(interface=interface, ssid=ssid, index=index, quality=quality))
        return '\n'.join(blocks)

    def written_ssids(self):
        return [fields['ssid'] for batch in self.batches for fields in batch.values() if 'ssid' in fields]

    def written_positions(self):
        return [position for batch in self.batches for position in batch]


def bwc_output(samples):
    """Render (rx_bytes, tx_bytes) pairs the way luci-bwc prints them"""
    return ',\n'.join(
        f"[ {1700000000 + i}, {rx}, {i * 10}, {tx}, {i * 10} ]"
        for i, (rx, tx) in enumerate(samples)
    )


@pytest.fixture
def device():
    return FakeDevice()
