#!/usr/bin/python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2025 CaesarCoder <caesrcd@tutamail.com>
# Distributed under the MIT software license, see the accompanying
# file COPYING or https://opensource.org/licenses/mit-license.php.
"""
RBH - Ye Olde Ban Hammer for XRPL (rippled) peer nodes.

This program polls the admin interface of a local rippled node for its
connected peers and temporarily bans the unstable ones through firewalld
rich rules, closing their open sockets afterwards. Bans expire on their own
and are restored when firewalld reloads its configuration.

Author: CaesarCoder <caesrcd@tutamail.com>
License: MIT
"""

# Python module imports
import ipaddress
import logging
import os
import re
import subprocess
import sys
import textwrap
import threading
from abc import ABC, abstractmethod
from argparse import (
    ArgumentParser,
    Namespace,
    RawDescriptionHelpFormatter,
    SUPPRESS
)
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum, StrEnum
from hashlib import sha256
from logging import Logger
from pathlib import Path
from queue import Empty, Queue
from time import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Set, Tuple

# Third-party module imports
import requests
import yaml
from jeepney import (
    AuthenticationError,
    DBusAddress,
    MatchRule,
    message_bus,
    new_method_call
)
from jeepney.io.common import RouterClosed
from jeepney.io.threading import (
    DBusRouter,
    Proxy as DBusProxy,
    open_dbus_connection
)
from jeepney.wrappers import DBusErrorResponse, unwrap_msg

class Version:
    """Class responsible for managing program version information.

    Implements Semantic Versioning with automatic build hash generation.
    Build hash is calculated from source file SHA256 in development mode.
    """
    MAJOR = 1
    MINOR = 0
    PATCH = 0

    @classmethod
    def get_build_hash(cls) -> str | None:
        """Generates SHA256 hash of the source file for version tracking.

        Returns the first 8 characters of the hash, or None when the file
        cannot be read (e.g., when running from a packaged executable).
        """
        sha256_hash = sha256()
        try:
            with open(__file__, 'rb') as f:
                for chunk in iter(lambda: f.read(4096), b''):
                    sha256_hash.update(chunk)
            return sha256_hash.hexdigest()[:8]
        except FileNotFoundError:
            return None

    @classmethod
    def get_full_version(cls) -> str:
        """Returns complete version string in SemVer format.

        Appends build hash when running from source code.
        Format: MAJOR.MINOR.PATCH+build.HASH (e.g., 1.0.0+build.a1b2c3d4)
        """
        version = f'{cls.MAJOR}.{cls.MINOR}.{cls.PATCH}'

        build = cls.get_build_hash()
        if build:
            version += f'+build.{build}'

        return version

__version__ = Version.get_full_version()

class Color(StrEnum):
    """ANSI color codes used for formatting terminal output.

    Each member represents a specific color or reset code following
    the ANSI escape sequence format (\033[<code>m).
    Typically used to enhance the visibility of status messages.
    """
    RST   = '\033[0m'   # Reset
    CYN   = '\033[36m'  # Cyan
    GRN_L = '\033[92m'  # Green Light
    RED_L = '\033[91m'  # Red Light
    WHT_L = '\033[97m'  # White Light

class Status(Enum):
    """Enumeration representing possible statuses for banner messages.

    Each status consists of a color code and a human-readable label.
    Intended for visual output formatting in terminal environments.
    """
    EMPTY  = (Color.RST,   '      ')
    OK     = (Color.GRN_L, '  OK  ')
    FAILED = (Color.RED_L, 'FAILED')

    @property
    def color(self) -> str:
        """Returns the ANSI color code associated with the status."""
        return self.value[0]

    @property
    def label(self) -> str:
        """Returns the text label associated with the status."""
        return self.value[1]

# firewalld D-Bus API, see firewalld.dbus(5)
FWD_BUS_NAME: str = 'org.fedoraproject.FirewallD1'
FWD_INTERFACE: str = 'org.fedoraproject.FirewallD1'
FWD_ZONE_INTERFACE: str = 'org.fedoraproject.FirewallD1.zone'
FWD_OBJECT_PATH: str = '/org/fedoraproject/FirewallD1'
FWD_ALREADY_ENABLED: str = 'ALREADY_ENABLED'

BAN_ZONE: str = 'drop'          # Zone receiving fresh bans
REFRESH_ZONE: str = ''          # Empty means the daemon's default zone
DBUS_CALL_TIMEOUT: float = 10   # Seconds to wait for a firewalld reply
EXPIRE_INTERVAL: float = 60     # Seconds between blacklist sweeps
TCPKILL_DEADLINE: float = 0.5   # Seconds tcpkill may run before it is stopped
TIMEOUT_EXIT_STATUS: int = 124  # coreutils timeout(1) status when the deadline hits

DEFAULT_PEER_PORT: int = 51235      # Standard rippled peer port
DEFAULT_TOR_SOCKS_PORT: int = 9050  # Standard Tor SOCKS5 port

ENV_PREFIX: str = 'RBH_'
TRUE_VALUES: Set[str] = {'1', 'true', 'yes', 'on'}

# Module-level logger
logger: Logger = logging.getLogger(__name__)

class FirewallError(Exception):
    """Base class for failures reported while talking to firewalld."""

class DaemonUnavailable(FirewallError):
    """The system bus cannot be reached, or firewalld is not connected."""

class PermissionOrNotRunning(FirewallError):
    """The bus answered but the default zone query failed.

    Usually the user lacks permission to talk to firewalld, or the daemon
    is not running.
    """

class RuleAlreadyActive(FirewallError):
    """firewalld already holds an identical rule. Not a failure."""

class RuleInsertFailed(FirewallError):
    """firewalld refused the rich rule."""

class InvalidAddress(FirewallError, ValueError):
    """The address does not parse as IPv4 or IPv6."""

class DisconnectError(Exception):
    """Base class for failures closing a banned peer's connection."""

class TerminationFailed(DisconnectError):
    """The external utility reported an error."""

class TerminationUnsupported(DisconnectError):
    """The external utility is not installed on this host."""

class NodeRPCError(Exception):
    """The rippled admin RPC could not be reached or returned an error."""

@dataclass
class DefaultOptions:
    """Configuration options for the ban hammer.

    Attributes:
        banlength: Duration of a ban in minutes.
        repeat: Seconds between two polls of the node's peer list.
        whitelist: IP addresses that are never banned.
        docker: Container name to exec the disconnect utility in.
        tcpkill: Use `tcpkill` instead of `ss -K` to close sockets.
        aggression: tcpkill aggression level (1-9).
        iface: Network interface tcpkill listens on (empty for its default).
        minver: Minimum rippled version acceptable to avoid the ban hammer.
        rpcurl: rippled admin JSON-RPC endpoint.
        user: admin_user configured in rippled, if any.
        passwd: admin_password configured in rippled, if any.
        proxy: SOCKS5 proxy used to reach the RPC endpoint.

    Raises:
        ValueError: If validation fails for any attribute.
    """
    banlength: int = 1440
    repeat: int = 60
    whitelist: List[str] = field(default_factory=list)
    docker: str = ''
    tcpkill: bool = False
    aggression: int = 3
    iface: str = ''
    minver: str = '1.2.4'
    rpcurl: str = 'http://127.0.0.1:5005'
    user: str = ''
    passwd: str = ''
    proxy: str = ''

    def __setattr__(self, name: str, value: Any) -> None:
        """Validates attribute constraints before assignment."""
        msg_pre = f'argument -{name}'
        if name in ('banlength', 'repeat') and value < 1:
            raise ValueError(f"{msg_pre}: value must be at least 1: '{value}'")
        if name == 'aggression' and not 1 <= value <= 9:
            raise ValueError(f"{msg_pre}: value must be between 1 and 9: '{value}'")
        if name == 'minver' and parse_version(value) is None:
            raise ValueError(f"{msg_pre}: invalid version: '{value}'")
        if name == 'whitelist':
            for ip in value:
                try:
                    ipaddress.ip_address(ip)
                except ValueError:
                    raise ValueError(f"{msg_pre}: invalid IP address: '{ip}'") from None
        super().__setattr__(name, value)

class Proxy:
    """Global proxy configuration settings (static class).

    Class Attributes:
        ip: IP address of the proxy server.
        port: Port number of the proxy server.
        url: Dictionary containing protocol-to-proxy URL mappings.
    """
    ip: str | None = None
    port: int | None = None
    url: Dict[str, str] | None = None

    @classmethod
    def set(cls, proxy: str) -> None:
        """Set global proxy configuration.

        Parses proxy address and creates socks5h:// URLs for HTTP/HTTPS.
        If port is omitted, uses DEFAULT_TOR_SOCKS_PORT as fallback.

        Args:
            proxy: Proxy address in format 'ip:port' or just 'ip'
        """
        cls.ip, cls.port = split_addressport(proxy, DEFAULT_TOR_SOCKS_PORT)
        cls.url = {
            'http': f'socks5h://{cls.ip}:{cls.port}',
            'https': f'socks5h://{cls.ip}:{cls.port}'
        }

    @classmethod
    def is_set(cls) -> bool:
        """Check if a proxy is currently configured.

        Returns:
            True if the proxy IP is set, False otherwise.
        """
        return cls.ip is not None

@dataclass
class Peer:
    """A peer of the rippled node, as reported by the admin `peers` command.

    Attributes:
        public_key: Long-term node public key, the peer's stable identity.
        address: IP address and port of the peer.
        version: Build version string (e.g., rippled-1.5.0).
        uptime: Seconds the peer has been connected.
        latency: Round-trip latency in milliseconds.
        load: Load the peer puts on the node.
        sanity: Ledger sanity reported by rippled (empty, unknown or insane).
    """
    public_key: str
    address: str = ''
    version: str = ''
    uptime: int = 0
    latency: int = 0
    load: int = 0
    sanity: str = ''

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> 'Peer':
        """Builds a peer from one entry of the `peers` RPC result."""
        return cls(
            public_key=data.get('public_key', ''),
            address=data.get('address', ''),
            version=data.get('version', ''),
            uptime=int(data.get('uptime') or 0),
            latency=int(data.get('latency') or 0),
            load=int(data.get('load') or 0),
            sanity=data.get('sanity', '')
        )

    @property
    def ip(self) -> str:
        """Returns the peer's IP address without port.

        IPv4-mapped IPv6 addresses are returned in dotted IPv4 form. A
        malformed address is returned as is and fails later rule checks.
        """
        try:
            address, _ = split_addressport(self.address, DEFAULT_PEER_PORT)
        except ValueError:
            return self.address
        return canonical_ip(address)

    def is_stable(self, min_version: str) -> bool:
        """Returns whether the peer should be left alone.

        A peer is unstable when rippled flags its ledger as insane, or when
        its version is known and older than min_version.
        """
        if self.sanity == 'insane':
            return False
        current = parse_version(self.version)
        minimum = parse_version(min_version)
        if current and minimum and current < minimum:
            return False
        return True

@dataclass(frozen=True)
class RichRule:
    """A firewalld rich rule rejecting or dropping one source host.

    The rule is not permanent: it is always inserted with a timeout, so the
    timeout is carried along but is not part of the rendered rule text.
    """
    family: str
    source: str
    mask: int
    action: str
    timeout: int = 0

    @classmethod
    def for_address(cls, ip: str, action: str, timeout: int = 0) -> 'RichRule':
        """Builds a rule for a single host address.

        Raises:
            InvalidAddress: If ip is not a valid IPv4 or IPv6 address.
        """
        try:
            address = ipaddress.ip_address(ip)
        except ValueError:
            raise InvalidAddress(f"firewalld: invalid IP address '{ip}'") from None
        if address.version == 6 and address.ipv4_mapped:
            address = address.ipv4_mapped
        family = 'ipv4' if address.version == 4 else 'ipv6'
        return cls(family, str(address), address.max_prefixlen, action, timeout)

    def __str__(self) -> str:
        return (
            f"rule family='{self.family}' "
            f"source address='{self.source}/{self.mask}' {self.action}"
        )

def drop_rule(ip: str, timeout: int = 0) -> RichRule:
    """Rule silently discarding all traffic from ip, used for fresh bans."""
    return RichRule.for_address(ip, 'drop', timeout)

def reject_rule(ip: str, timeout: int = 0) -> RichRule:
    """Rule rejecting all traffic from ip, used to restore bans after a reload."""
    return RichRule.for_address(ip, 'reject', timeout)

def to_known_error(err: DBusErrorResponse) -> FirewallError:
    """Maps a firewalld fault to the matching exception.

    firewalld prefixes its fault messages with an error code. A rule that is
    already present comes back as 'ALREADY_ENABLED: <rule>', which callers
    take as success. The prefix is matched literally.
    """
    message = str(err.data[0]) if err.data else str(err.name or '')
    if message.startswith(FWD_ALREADY_ENABLED):
        return RuleAlreadyActive(message)
    return RuleInsertFailed(f'firewalld: {message}')

class FirewallD:
    """Client for firewalld on the system D-Bus.

    One instance owns one bus connection, wrapped in a thread-safe router so
    the reload subscription and rule inserts may run on different threads.
    Nothing works until connect() has succeeded.
    """

    def __init__(self, bus: str = 'SYSTEM', timeout: float = DBUS_CALL_TIMEOUT) -> None:
        self.bus = bus
        self.timeout = timeout
        self.zone = ''
        self._address = DBusAddress(
            FWD_OBJECT_PATH,
            bus_name=FWD_BUS_NAME,
            interface=FWD_INTERFACE
        )
        self._conn = None
        self._router: DBusRouter | None = None
        self._reload_filter = None
        self._up = False

    def connect(self) -> str:
        """Opens the bus connection and resolves firewalld's default zone.

        Returns:
            The default zone name.

        Raises:
            DaemonUnavailable: If the bus cannot be reached.
            PermissionOrNotRunning: If the zone query fails. The connection
                is closed again.
        """
        try:
            self._conn = open_dbus_connection(bus=self.bus)
        except (OSError, AuthenticationError, KeyError) as e:
            self._up = False
            logger.error('dbus: %s', e)
            raise DaemonUnavailable(f'dbus: {e}') from e

        self._router = DBusRouter(self._conn)
        try:
            self.zone = self._call(self._address, 'getDefaultZone')[0]
        except (DBusErrorResponse, OSError, RouterClosed) as e:
            logger.error(
                'firewalld: cannot retrieve zone, check user permission '
                'or firewalld status: %s', e)
            self.close()
            raise PermissionOrNotRunning(f'firewalld: {e}') from e

        logger.info('firewalld: zone - %s', self.zone)
        self._up = True
        return self.zone

    def is_up(self) -> bool:
        """Returns True if firewalld answered the last connect()."""
        return self._up

    def add_rule(self, zone: str, rule: str, timeout: int) -> None:
        """Adds a rich rule that firewalld removes after timeout seconds.

        Args:
            zone: Target zone; empty for the default zone.
            rule: Rich rule text.
            timeout: Lifetime of the rule in seconds.

        Raises:
            DaemonUnavailable: If connect() has not succeeded.
            RuleAlreadyActive: If the identical rule is already in place.
            RuleInsertFailed: For any other fault.
        """
        if self._router is None or not self._up:
            raise DaemonUnavailable('firewalld: not running')

        zone = zone or self.zone
        logger.info('firewalld: adding rule (%s) to %s zone', rule, zone)

        try:
            self._call(
                self._address.with_interface(FWD_ZONE_INTERFACE),
                'addRichRule', 'ssi', (zone, str(rule), int(timeout))
            )
        except DBusErrorResponse as e:
            raise to_known_error(e) from e
        except (OSError, RouterClosed) as e:
            raise RuleInsertFailed(f'firewalld: {e}') from e

    def watch_reload(self, sink: Queue) -> None:
        """Puts every firewalld 'Reloaded' signal message into sink.

        Raises:
            RuntimeError: If called before a successful connect().
        """
        if self._router is None:
            raise RuntimeError('firewall not available')

        rule = MatchRule(
            type='signal',
            interface=FWD_INTERFACE,
            member='Reloaded',
            path=FWD_OBJECT_PATH
        )
        DBusProxy(message_bus, self._router, timeout=self.timeout).AddMatch(rule)
        self._reload_filter = self._router.filter(rule, queue=sink)

    def close(self) -> None:
        """Drops the reload subscription and closes the bus connection."""
        self._up = False
        if self._reload_filter is not None:
            self._reload_filter.close()
            self._reload_filter = None
        if self._router is not None:
            self._router.close()
            self._router = None
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _call(self, address: DBusAddress, method: str,
            signature: str | None = None, body: tuple = ()) -> tuple:
        msg = new_method_call(address, method, signature, body)
        reply = self._router.send_and_get_reply(msg, timeout=self.timeout)
        return unwrap_msg(reply)

def docker_exec(container: str, args: List[str]) -> List[str]:
    """Prefixes args with `docker exec <container>` when container is set."""
    if container:
        return ['docker', 'exec', container] + args
    return args

class Disconnector(ABC):
    """Closes the open connection of a peer that has just been banned."""

    @abstractmethod
    def disconnect(self, peer: Peer) -> None:
        """Closes the peer's socket.

        Raises:
            TerminationFailed: If the external utility reported an error.
            TerminationUnsupported: If the external utility is missing.
        """

class SocketKillDisconnector(Disconnector):
    """Closes sockets with `ss -K` from the iproute2 suite.

    Runs a command similar to `ss -K -H dst 192.168.1.10`. The kernel must
    be built with CONFIG_INET_DIAG_DESTROY (Linux 4.9 or later); otherwise
    ss silently skips the socket. Requires root or elevated privileges.
    """

    def __init__(self, container: str = '') -> None:
        self.container = container

    def command(self, peer: Peer) -> List[str]:
        """Returns the argument vector closing the peer's sockets."""
        return docker_exec(self.container, ['ss', '-K', '-H', 'dst', peer.ip])

    def disconnect(self, peer: Peer) -> None:
        cmd = self.command(peer)
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except FileNotFoundError:
            raise TerminationUnsupported(f'{cmd[0]}: command not found') from None
        except OSError as e:
            raise TerminationFailed(f'{cmd[0]}: {e}') from e

        output = result.stdout.strip()
        if not output:
            output = 'Peer not disconnected or `ss -K` unsupported'
        logger.info('firewall disconnect: %s', output)

        if result.returncode != 0:
            raise TerminationFailed(
                f'{cmd[0]} exited with status {result.returncode}: '
                f'{result.stderr.strip()}')

class TCPKillDisconnector(Disconnector):
    """Closes connections with `tcpkill` from the dsniff suite.

    tcpkill sniffs the peer's traffic and injects RST packets into the TCP
    receive window, so it may fail on busy nodes with many connections.
    Higher aggression levels (1-9) send more packets. tcpkill never exits on
    its own: it is stopped after the deadline and that counts as success.
    Inside a container, killing `docker exec` leaves tcpkill running, so
    there it runs under coreutils `timeout` with the same deadline.
    """

    def __init__(self, container: str = '', aggression: int = 3,
            iface: str = '', deadline: float = TCPKILL_DEADLINE) -> None:
        if not 1 <= aggression <= 9:
            raise ValueError(f"tcpkill: aggression must be between 1 and 9: '{aggression}'")
        self.container = container
        self.aggression = aggression
        self.iface = iface
        self.deadline = deadline

    def command(self, peer: Peer) -> List[str]:
        """Returns the argument vector killing the peer's connections."""
        args = ['tcpkill']
        if self.iface:
            args += ['-i', self.iface]
        args += [f'-{self.aggression}', 'host', peer.ip]
        if self.container:
            args = ['timeout', f'{self.deadline:g}'] + args
        return docker_exec(self.container, args)

    def disconnect(self, peer: Peer) -> None:
        cmd = self.command(peer)
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True
            )
        except FileNotFoundError:
            raise TerminationUnsupported(f'{cmd[0]}: command not found') from None
        except OSError as e:
            raise TerminationFailed(f'{cmd[0]}: {e}') from e

        try:
            output, _ = proc.communicate(timeout=self.deadline)
        except subprocess.TimeoutExpired:
            proc.kill()
            try:
                output, _ = proc.communicate(timeout=self.deadline)
            except subprocess.TimeoutExpired:
                output = ''
            logger.info('firewall disconnect: tcpkill stopped after %ss %s',
                self.deadline, (output or '').strip())
            return

        if self.container and proc.returncode == TIMEOUT_EXIT_STATUS:
            logger.info('firewall disconnect: tcpkill stopped after %ss %s',
                self.deadline, (output or '').strip())
            return
        if proc.returncode != 0:
            raise TerminationFailed(
                f'{cmd[0]} exited with status {proc.returncode}: '
                f'{(output or "").strip()}')
        logger.info('firewall disconnect: %s', (output or '').strip())

DISCONNECTORS: Tuple[str, ...] = ('default', 'sskill', 'tcpkill')

def make_disconnector(kind: str = 'default', container: str = '',
        aggression: int = 3, iface: str = '') -> Disconnector:
    """Returns the disconnect strategy selected in configuration.

    Args:
        kind: One of 'default', 'sskill' or 'tcpkill'.
        container: Optional container to exec the utility in.
        aggression: tcpkill aggression level.
        iface: tcpkill network interface.

    Raises:
        ValueError: If kind is unknown or aggression is out of range.
    """
    if kind == 'tcpkill':
        return TCPKillDisconnector(container, aggression, iface)
    if kind in ('default', 'sskill'):
        return SocketKillDisconnector(container)
    raise ValueError(f"unknown disconnector '{kind}', expected one of {', '.join(DISCONNECTORS)}")

@dataclass
class BlacklistEntry:
    """A banned peer and the Unix timestamp its ban ends."""
    peer: Peer
    expires: float

    def expired(self, now: float) -> bool:
        return self.expires <= now

    def remaining(self, now: float) -> float:
        return self.expires - now

class Blacklist:
    """Banned peers keyed by public key, with per-entry expiry.

    All methods take the instance lock, so the ban path, the expiry sweeper
    and the reload handler may share one blacklist.
    """

    def __init__(self, duration: float, clock: Callable[[], float] = time) -> None:
        self.duration = duration
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, BlacklistEntry] = {}

    def add(self, peer: Peer) -> bool:
        """Records a ban for peer unless one is already live.

        Returns:
            True if a new entry was created.
        """
        with self._lock:
            now = self._clock()
            entry = self._entries.get(peer.public_key)
            if entry and not entry.expired(now):
                return False
            self._entries[peer.public_key] = BlacklistEntry(peer, now + self.duration)
            return True

    def get(self, public_key: str) -> BlacklistEntry | None:
        with self._lock:
            return self._entries.get(public_key)

    def contains(self, peer: Peer) -> bool:
        with self._lock:
            return peer.public_key in self._entries

    def expire_entries(self, now: float | None = None) -> List[BlacklistEntry]:
        """Removes and returns every entry whose ban has ended."""
        with self._lock:
            now = self._clock() if now is None else now
            expired = [e for e in self._entries.values() if e.expired(now)]
            for entry in expired:
                del self._entries[entry.peer.public_key]
            return expired

    def active(self, now: float | None = None) -> List[BlacklistEntry]:
        """Returns a snapshot of the entries still banned."""
        with self._lock:
            now = self._clock() if now is None else now
            return [e for e in self._entries.values() if not e.expired(now)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

class Whitelist:
    """Addresses that are never banned.

    Membership is fixed at construction. The value kept for an address is
    the last peer seen on it and is informational only.
    """

    def __init__(self, addresses: Iterable[str] = ()) -> None:
        self._entries: Dict[str, Peer | None] = {
            canonical_ip(ip): None for ip in addresses if ip
        }

    def contains(self, peer: Peer) -> bool:
        ip = peer.ip
        if ip in self._entries:
            # always update the peer data with current known state
            self._entries[ip] = peer
            return True
        return False

    def observed(self, ip: str) -> Peer | None:
        """Returns the last peer seen on a whitelisted address."""
        return self._entries.get(canonical_ip(ip))

    def __iter__(self):
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

class Firewall:
    """Temporarily bans XRPL peers through firewalld.

    A ban inserts a timed drop rule, records the peer in the blacklist and
    closes its socket. Failures of the rule insert or of the disconnect are
    logged and never undo the blacklist record: the blacklist drives expiry
    and the reload handler restores any rule firewalld lost.

    Args:
        backend: Connected FirewallD (or any object with add_rule()).
        ban_length: Ban duration in minutes.
        whitelist: Addresses that are never banned.
        disconnector: Strategy closing the banned peer's socket,
            SocketKillDisconnector by default.
        clock: Source of Unix timestamps.
    """

    def __init__(self, backend: FirewallD, ban_length: int,
            whitelist: Iterable[str] = (),
            disconnector: Disconnector | None = None,
            clock: Callable[[], float] = time) -> None:
        self.backend = backend
        self.disconnector = disconnector or SocketKillDisconnector()
        self.whitelist = Whitelist(whitelist)
        self.blacklist = Blacklist(ban_length * 60, clock)
        self._clock = clock

    @property
    def ban_seconds(self) -> int:
        return int(self.blacklist.duration)

    def ban_peer(self, peer: Peer) -> bool:
        """Bans peer unless its address is whitelisted.

        Returns:
            True if a new blacklist entry was created.
        """
        if self.whitelist.contains(peer):
            logger.debug('firewall: %s is whitelisted', peer.ip)
            return False

        try:
            rule = drop_rule(peer.ip, self.ban_seconds)
        except InvalidAddress as e:
            logger.error('%s (peer %s)', e, peer.public_key)
            return False

        self._insert(BAN_ZONE, rule)
        added = self.blacklist.add(peer)
        self.disconnect(peer)
        return added

    def expire(self) -> List[BlacklistEntry]:
        """Removes the peers whose ban has ended."""
        return self.blacklist.expire_entries()

    def refresh_bans(self) -> int:
        """Re-inserts the rules of every live ban after a firewalld reload.

        Each rule gets the entry's remaining time as timeout, so a reload
        never extends a ban. Failures are logged per entry.

        Returns:
            The number of rule inserts attempted.
        """
        self.expire()
        now = self._clock()
        attempts = 0
        for entry in self.blacklist.active(now):
            try:
                rule = reject_rule(entry.peer.ip, max(1, round(entry.remaining(now))))
            except InvalidAddress as e:
                logger.error('%s (peer %s)', e, entry.peer.public_key)
                continue
            self._insert(REFRESH_ZONE, rule)
            attempts += 1
        return attempts

    def disconnect(self, peer: Peer) -> None:
        """Closes the peer's socket, logging any failure."""
        try:
            self.disconnector.disconnect(peer)
        except DisconnectError as e:
            logger.warning('firewall disconnect: %s', e)

    def _insert(self, zone: str, rule: RichRule) -> None:
        try:
            self.backend.add_rule(zone, str(rule), rule.timeout)
        except RuleAlreadyActive:
            logger.debug('firewalld: rule already active (%s)', rule)
        except FirewallError as e:
            logger.error('%s', e)

class BackgroundTasks:
    """Runs the blacklist sweeper and the reload watcher on two threads.

    Both threads stop when stop_event is set; stop() sets it and waits for
    them, after which neither touches the blacklist again.
    """

    def __init__(self, firewall: Firewall, backend: FirewallD,
            expire_interval: float = EXPIRE_INTERVAL,
            poll_interval: float = 0.5) -> None:
        self.firewall = firewall
        self.backend = backend
        self.expire_interval = expire_interval
        self.poll_interval = poll_interval
        self.stop_event = threading.Event()
        self.reloads: Queue = Queue()
        self._threads: List[threading.Thread] = []

    def start(self) -> None:
        """Subscribes to firewalld reloads and starts both threads."""
        self.backend.watch_reload(self.reloads)
        for name, target in (
            ('rbh-expire', self._expire_loop),
            ('rbh-reload', self._reload_loop)
        ):
            thread = threading.Thread(target=target, name=name, daemon=True)
            thread.start()
            self._threads.append(thread)

    def stop(self, timeout: float | None = None) -> None:
        self.stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads.clear()

    def __enter__(self) -> 'BackgroundTasks':
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.stop()
        return False

    def _expire_loop(self) -> None:
        while not self.stop_event.wait(self.expire_interval):
            expired = self.firewall.expire()
            logger.info('run: flushed %d expired firewall entries', len(expired))

    def _reload_loop(self) -> None:
        while not self.stop_event.is_set():
            try:
                self.reloads.get(timeout=self.poll_interval)
            except Empty:
                continue
            if self.stop_event.is_set():
                break
            logger.info('run: firewalld reloaded')
            self.firewall.refresh_bans()

class NodeRPC:
    """JSON-RPC client for the rippled admin port."""

    def __init__(self, url: str, user: str = '', password: str = '',
            proxies: Dict[str, str] | None = None, timeout: float = 30) -> None:
        self.url = url
        self.user = user
        self.password = password
        self.proxies = proxies
        self.timeout = timeout

    def call(self, method: str, **params: Any) -> Dict[str, Any]:
        """Calls an admin method and returns its result object.

        Raises:
            NodeRPCError: On transport failures or an error status.
        """
        if self.user:
            params.setdefault('admin_user', self.user)
            params.setdefault('admin_password', self.password)

        try:
            response = requests.post(
                self.url,
                json={'method': method, 'params': [params]},
                proxies=self.proxies,
                timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise NodeRPCError(str(e)) from e

        result = data.get('result') or {}
        if result.get('status') == 'error':
            raise NodeRPCError(
                result.get('error_message') or result.get('error') or 'unknown error')
        return result

    def peers(self) -> List[Peer]:
        """Returns the peers currently connected to the node."""
        return [Peer.from_json(p) for p in self.call('peers').get('peers') or []]

def canonical_ip(ip: str) -> str:
    """Returns ip in canonical text form, or unchanged if it does not parse.

    IPv4-mapped IPv6 addresses are returned in dotted IPv4 form.
    """
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return ip
    if address.version == 6 and address.ipv4_mapped:
        return str(address.ipv4_mapped)
    return str(address)

def parse_version(text: str) -> Tuple[int, int, int] | None:
    """Extracts the first MAJOR.MINOR.PATCH triple found in text."""
    match = re.search(r'(\d+)\.(\d+)\.(\d+)', text or '')
    if not match:
        return None
    return tuple(int(n) for n in match.groups())

def split_addressport(addressport: str, dport: int=DEFAULT_PEER_PORT) -> Tuple[str, int]:
    """Splits an address string into (address, port).

    Handles IPv4, IPv6 (with or without brackets), and addresses without
    explicit port.

    Args:
        addressport: Address string, optionally with port (e.g., '1.2.3.4:51235', '[::1]:51235').
        dport: Default port if none specified (default: 51235).

    Returns:
        Tuple of (address, port).

    Raises:
        ValueError: If IPv6 address format is malformed.
    """
    if addressport.startswith('['):
        match = re.match(r'^\[([^\]]+)\](?::(\d+))?$', addressport)
        if not match:
            raise ValueError(f'Malformed IPv6 address: {addressport}')
        address = match.group(1)
        port = int(match.group(2)) if match.group(2) else dport
    elif addressport.count(':') > 1:
        address, port = addressport, dport
    else:
        parts = addressport.rsplit(':', 1)
        if len(parts) == 2 and parts[1].isdigit():
            address, port = parts[0], int(parts[1])
        else:
            address, port = addressport, dport
    return address, port

def read_config_file(path: str | None) -> Dict[str, Any]:
    """Reads option values from a YAML config file.

    Without a path, ~/.rbh.yaml is used when it exists. A missing file
    yields no values.

    Raises:
        ValueError: If the file is not valid YAML or not a mapping.
    """
    config_path = Path(path).expanduser() if path else Path.home() / '.rbh.yaml'
    if not config_path.is_file():
        if path:
            logger.warning('config file not found: %s', config_path)
        return {}

    try:
        with open(config_path, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValueError(f'argument -config: invalid YAML in {config_path}: {e}') from e
    if not isinstance(data, dict):
        raise ValueError(f'argument -config: expected a mapping in {config_path}')

    logger.info('Using config file: %s', config_path)
    return {str(k).replace('-', '_').lower(): v for k, v in data.items()}

def coerce_option(name: str, value: Any) -> Any:
    """Converts a config file or environment value to the option's type."""
    default = getattr(DefaultOptions(), name)
    try:
        if isinstance(default, bool):
            if isinstance(value, str):
                return value.strip().lower() in TRUE_VALUES
            return bool(value)
        if isinstance(default, int):
            return int(value)
        if isinstance(default, list):
            if isinstance(value, str):
                return value.split()
            return [str(v) for v in value]
    except (TypeError, ValueError):
        raise ValueError(f"argument -{name}: invalid value: '{value}'") from None
    return str(value)

def load_options(args: Namespace, environ: Mapping[str, str] = os.environ) -> DefaultOptions:
    """Merges defaults, config file, environment and command line.

    Later sources win: config file, then RBH_* environment variables, then
    command-line arguments.

    Raises:
        ValueError: If any value fails validation.
    """
    options = DefaultOptions()
    file_conf = read_config_file(getattr(args, 'config', None))

    for f in fields(DefaultOptions):
        value = getattr(args, f.name, None)
        if value is None:
            value = environ.get(ENV_PREFIX + f.name.upper())
        if value is None:
            value = file_conf.get(f.name)
        if value is not None:
            setattr(options, f.name, coerce_option(f.name, value))

    return options

def build_parser() -> ArgumentParser:
    """Builds and returns the command-line argument parser.

    Global options come first, followed by one of the commands:
      - run: Poll the node and ban unstable peers until interrupted.
      - ban: Ban connected peers by IP address once.

    Returns:
        Configured parser ready to parse command-line arguments.
    """
    parser = ArgumentParser(
        add_help=False,
        usage='%(prog)s [options]... {run,ban} ...',
        description=(
            'Give errant XRPL (rippled) nodes "Ye Olde Ban Hammer": '
            'temporarily ban unstable peers with firewalld.'
        ),
        epilog=textwrap.dedent('''\
            Commands:
              run                    Poll the node and ban unstable peers.
              ban IP [IP ...]        Ban the connected peers with these addresses.

            Options may also be set in a YAML config file (default: ~/.rbh.yaml)
            or through RBH_<OPTION> environment variables, e.g. RBH_WHITELIST.

            Examples:
              %(prog)s -whitelist '10.0.0.10 10.0.0.20' run -repeat 30
              %(prog)s -docker rippled --tcpkill ban 192.168.1.10
              %(prog)s -rpcurl http://127.0.0.1:5005 -banlength 60 run
            '''),
        formatter_class=RawDescriptionHelpFormatter
    )
    parser.add_argument('-h', '--help', action='help', help=SUPPRESS)
    argrp_opt = parser.add_argument_group('Options')
    argrp_opt.add_argument('-config', metavar="'str'", type=str,
        help='Specify the configuration file. (default: ~/.rbh.yaml)')
    argrp_opt.add_argument('-logfile', metavar="'str'", type=str,
        default='debug.log', help='Log file. (default: debug.log)')
    argrp_opt.add_argument('-minver', metavar="'str'", type=str,
        help='Minimum version acceptable to avoid the ban hammer. (default: 1.2.4)')
    argrp_opt.add_argument('-passwd', metavar="'str'", type=str,
        help='admin_password if any configured in rippled.')
    argrp_opt.add_argument('-proxy', metavar='ip[:port]', type=str,
        help='Connect to the RPC endpoint through SOCKS5 proxy.')
    argrp_opt.add_argument('-rpcurl', metavar="'str'", type=str,
        help='rippled admin JSON-RPC endpoint. (default: http://127.0.0.1:5005)')
    argrp_opt.add_argument('-user', metavar="'str'", type=str,
        help='admin_user if any configured in rippled.')
    argrp_opt.add_argument('--version', action='version',
        version=textwrap.dedent(f'''
            %(prog)s (RBH) v{__version__}
            Copyright (C) 2025 CaesarCoder <caesrcd@tutamail.com>
            Distributed under the MIT software license, see the accompanying
            file COPYING or https://opensource.org/licenses/mit-license.php.
            '''),
        help='Show version information.')
    argrp_ban = parser.add_argument_group('Ban')
    argrp_ban.add_argument('-aggression', metavar='num', type=int,
        help='tcpkill aggression level, 1-9. (default: 3)')
    argrp_ban.add_argument('-banlength', metavar='num', type=int,
        help='Duration of the ban in minutes. (default: 1440)')
    argrp_ban.add_argument('-docker', metavar="'str'", type=str,
        help='Name of a docker container to exec the socket close in.')
    argrp_ban.add_argument('-iface', metavar="'str'", type=str,
        help='Network interface tcpkill listens on.')
    argrp_ban.add_argument('--tcpkill', action='store_true', default=None,
        help='Use `tcpkill` instead of `ss -K` to close the banned peer socket.')
    argrp_ban.add_argument('-whitelist', metavar="'ip ...'", type=str,
        help='Space separated addresses which are never candidates for the ban hammer.')

    commands = parser.add_subparsers(dest='command', metavar='command')
    cmd_run = commands.add_parser('run', help='Poll the node and ban unstable peers.')
    cmd_run.add_argument('-repeat', metavar='num', type=int,
        help='Check for new peers to ban after <num> seconds. (default: 60)')
    cmd_ban = commands.add_parser('ban', help='Ban one or more IP addresses.')
    cmd_ban.add_argument('ips', metavar='IP', nargs='+',
        help='Addresses of connected peers to ban.')

    return parser

def build_firewall(options: DefaultOptions, backend: FirewallD) -> Firewall:
    """Assembles a Firewall with the disconnect strategy from options."""
    if options.tcpkill:
        kind = 'tcpkill'
    elif options.docker:
        kind = 'sskill'
    else:
        kind = 'default'
    disconnector = make_disconnector(kind, options.docker, options.aggression, options.iface)
    return Firewall(backend, options.banlength, options.whitelist, disconnector=disconnector)

def connect_firewalld() -> FirewallD:
    """Connects to firewalld, exiting the program if that fails.

    The ban hammer cannot work without firewalld, so the failure is fatal
    and happens before any background task starts.
    """
    mark(Status.EMPTY, 'Checking access to firewalld via D-Bus...')

    backend = FirewallD()
    try:
        zone = backend.connect()
    except FirewallError as e:
        mark(Status.FAILED, f'{e}\r\n')
        sys.exit(1)

    mark(Status.OK, f'Checked access to firewalld (zone: {zone}).')
    return backend

def exec_ban(options: DefaultOptions, ips: Set[str]) -> None:
    """Bans the connected peers whose address is in ips."""
    backend = connect_firewalld()
    try:
        firewall = build_firewall(options, backend)
        node = NodeRPC(options.rpcurl, options.user, options.passwd, Proxy.url)
        try:
            peers = node.peers()
        except NodeRPCError as e:
            mark(Status.FAILED, f'Could not load peers. [{e}]\r\n')
            sys.exit(1)

        for peer in peers:
            if peer.ip in ips and firewall.ban_peer(peer):
                stamp(f'Peer banned: {peer.ip} {peer.public_key}')
    finally:
        backend.close()

def exec_peers(node: NodeRPC, firewall: Firewall, backend: FirewallD, min_version: str) -> int:
    """Fetches the node's peers once and bans the unstable ones.

    Returns:
        The number of peers newly banned.
    """
    try:
        peers = node.peers()
    except NodeRPCError as e:
        mark(Status.FAILED, f'Could not load peers. [{e}]', False)
        return 0

    banned = 0
    for peer in peers:
        if peer.is_stable(min_version):
            continue
        if not backend.is_up():
            stamp(f'Peer unstable but firewalld is down: {peer.ip} {peer.public_key}')
            continue
        if firewall.ban_peer(peer):
            stamp(f'Peer banned: {peer.ip} ({peer.version}) {peer.public_key}')
            banned += 1
    return banned

def main(argv: List[str] | None = None) -> None:
    """Entry point that parses CLI arguments, loads options, and runs a command.

    Prints help and exits if no command is given.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return

    setup_logging(args.logfile)

    try:
        options = load_options(args)
    except ValueError as e:
        parser.error(str(e))

    # Validate the addresses given to the ban command
    ips = set()
    for ip in getattr(args, 'ips', None) or []:
        try:
            ips.add(canonical_ip(str(ipaddress.ip_address(ip))))
        except ValueError:
            mark(Status.FAILED, f'Invalid IP address: {ip}', False)
    if args.command == 'ban' and not ips:
        parser.error('argument IP: no valid IP addresses provided')

    # Configure proxy if provided
    if options.proxy:
        Proxy.set(options.proxy)

    logger.info('RBH version v%s', __version__)

    if args.command == 'ban':
        exec_ban(options, ips)
    else:
        start(options)

def mark(status: Color | Status, text: str, answer: bool=True) -> None:
    """Displays a colored status label and message, then logs it.

    Prints formatted message with ANSI color codes to stdout and logs to
    the module logger (ERROR level for FAILED status, INFO for others).

    Args:
        status: Status enum (with label and color) or Color enum (color only).
        text: Message text to display and log.
        answer: If True, overwrites current line for progress updates;
                if False, prints on new line.
    """
    color = status.color if isinstance(status, Status) else Status.EMPTY.color
    label = status.label if isinstance(status, Status) else Status.EMPTY.label

    prefix = '\r' if answer and status != Status.EMPTY else '\n'
    suffix = '\r\n' if answer and status == Status.FAILED else ' '
    msg = f'{prefix}{Color.WHT_L}[{color}{label}{Color.WHT_L}]{Color.RST}{suffix}{text}'

    sys.stdout.write(msg)
    sys.stdout.flush()

    if status == Status.FAILED:
        logger.error(text.strip())
    else:
        logger.info(text.strip())

def setup_logging(path: str) -> None:
    """Configures file logging (INFO level, append mode, ISO 8601 timestamps)."""
    logger.setLevel(logging.INFO)
    file_handler = logging.FileHandler(path, mode='a', encoding='utf-8')
    file_handler.setFormatter(logging.Formatter(
        fmt='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%dT%H:%M:%S'
    ))
    logger.addHandler(file_handler)

def stamp(text: str) -> None:
    """Prints a timestamped log message with color formatting and logs it.

    Outputs message to stdout with ISO 8601 timestamp in cyan.
    Falls back to stderr if stdout fails (e.g., broken pipe).
    Also logs message via module logger at INFO level.

    Args:
        text: Log message to display and log.
    """
    date = datetime.now().strftime('%Y-%m-%dT%H:%M:%S')
    try:
        sys.stdout.write(f'\r\n{Color.CYN}{date}{Color.RST} {text}')
        sys.stdout.flush()
    except (BrokenPipeError, ValueError):
        try:
            sys.stdout.close()
        except Exception:  # pylint: disable=broad-exception-caught
            pass
        sys.stderr.write(f'\r\n{Color.CYN}{date}{Color.RST} {text}')
        sys.stderr.flush()
    logger.info(text.strip())

def start(options: DefaultOptions) -> None:
    """Connects to firewalld and runs the ban loop until interrupted.

    Starts the blacklist sweeper and the reload watcher, then polls the
    node every `repeat` seconds. Handles KeyboardInterrupt for graceful
    shutdown: both background tasks stop with a single call.
    """
    backend = connect_firewalld()
    firewall = build_firewall(options, backend)
    node = NodeRPC(options.rpcurl, options.user, options.passwd, Proxy.url)
    tasks = BackgroundTasks(firewall, backend)

    try:
        tasks.start()
        stamp(f'Ban hammer started (ban length: {options.banlength} minutes, '
            f'whitelist: {len(firewall.whitelist)} entries)')
        while True:
            exec_peers(node, firewall, backend, options.minver)
            if tasks.stop_event.wait(options.repeat):
                break
    except KeyboardInterrupt:
        pass
    finally:
        tasks.stop()
        backend.close()
        stamp('Shutdown: done\r\n')

if __name__ == '__main__':
    main()
