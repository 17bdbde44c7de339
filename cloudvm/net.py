"""Host-to-guest port forwarding rules for QEMU user-mode networking."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

import psutil
from loguru import logger

from .config import is_valid_port
from .errors import ValidationError

log = logger

GUEST_SSH_PORT = 22


@dataclass(frozen=True)
class ForwardingRule:
    host_port: int
    guest_port: int

    def __str__(self) -> str:
        return f'{self.host_port}:{self.guest_port}'

    def hostfwd(self) -> str:
        return f'hostfwd=tcp::{self.host_port}-:{self.guest_port}'


@dataclass(frozen=True)
class ForwardingPlan:
    """Ordered forwarding entries: extra rules first, management mapping last."""

    extra: tuple[ForwardingRule, ...]
    management: ForwardingRule
    dropped: tuple[str, ...] = field(default=())

    @property
    def rules(self) -> list[ForwardingRule]:
        return [*self.extra, self.management]

    def pairs(self) -> list[tuple[int, int]]:
        return [(r.host_port, r.guest_port) for r in self.rules]

    def netdev_arg(self, netdev_id: str = 'net0') -> str:
        parts = [f'user,id={netdev_id}']
        parts.extend(r.hostfwd() for r in self.rules)
        return ','.join(parts)


def parse_forward_rules(text: str | Iterable[str] | None) -> list[str]:
    """
    Split operator input like ``"8080:80, 8443:443"`` into rule strings.

    Example:
        >>> from cloudvm.net import parse_forward_rules
        >>> parse_forward_rules(' 8080:80,,8443:443 ')
        ['8080:80', '8443:443']
    """
    if text is None:
        return []
    if isinstance(text, str):
        items: Iterable[str] = text.split(',')
    else:
        items = text
    return [str(item).strip() for item in items if str(item).strip()]


def parse_rule(text: str) -> ForwardingRule:
    parts = str(text).strip().split(':')
    if len(parts) != 2:
        raise ValidationError(f'forwarding rule {text!r} must look like HOST:GUEST')
    host, guest = (p.strip() for p in parts)
    if not is_valid_port(host):
        raise ValidationError(f'forwarding rule {text!r}: invalid host port {host!r}')
    if not is_valid_port(guest):
        raise ValidationError(f'forwarding rule {text!r}: invalid guest port {guest!r}')
    return ForwardingRule(int(host), int(guest))


def plan(management_port: int | str, extra_rules: Iterable[str]) -> ForwardingPlan:
    """
    Build the forwarding plan for one VM.

    Invalid or duplicate extra rules are dropped with a warning. The
    management port is mandatory and always maps to guest port 22.

    Raises:
        ValidationError: if the management port itself is invalid.
    """
    if not is_valid_port(management_port):
        raise ValidationError(
            f'invalid management port {management_port!r} (must be 23-65535)'
        )
    management = ForwardingRule(int(management_port), GUEST_SSH_PORT)
    kept: list[ForwardingRule] = []
    dropped: list[str] = []
    seen_hosts: set[int] = set()
    for text in extra_rules:
        try:
            rule = parse_rule(text)
        except ValidationError as ex:
            log.warning('Dropping port forward: {}', ex)
            dropped.append(str(text))
            continue
        if rule.host_port in seen_hosts:
            log.warning(
                'Dropping port forward {}: host port {} is already forwarded',
                rule,
                rule.host_port,
            )
            dropped.append(str(text))
            continue
        seen_hosts.add(rule.host_port)
        kept.append(rule)
    if management.host_port in seen_hosts:
        # Not resolved here; QEMU will refuse to bind the second hostfwd.
        log.warning(
            'Port forward uses management port {}; QEMU may fail to start',
            management.host_port,
        )
    return ForwardingPlan(extra=tuple(kept), management=management, dropped=tuple(dropped))


def port_in_use(port: int) -> bool:
    """True if something on this host is listening on TCP ``port``."""
    try:
        conns = psutil.net_connections(kind='tcp')
    except (psutil.AccessDenied, OSError):
        log.debug('Cannot list sockets; assuming port {} is free', port)
        return False
    for conn in conns:
        if conn.status == psutil.CONN_LISTEN and conn.laddr and conn.laddr.port == port:
            return True
    return False
