"""
LogWarden Firewall Rule Engine

Translates block/allow intents into packet-filter commands and hands them
to an executor. Rules live in four dedicated chains (DENYIN, DENYOUT,
ALLOWIN, ALLOWOUT) that are jumped to from INPUT and OUTPUT.

Two executors are available:
- ImmediateExecutor runs one iptables/ip6tables process per command.
- BufferedExecutor collects commands and loads them in one
  iptables-restore --noflush transaction per address family.
"""

import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from logwarden.modules.address_set import check_ip
from logwarden.modules.logging_utils import get_logger

logger = get_logger("firewall")

DENY_IN = "DENYIN"
DENY_OUT = "DENYOUT"
ALLOW_IN = "ALLOWIN"
ALLOW_OUT = "ALLOWOUT"
CHAINS = (DENY_IN, DENY_OUT, ALLOW_IN, ALLOW_OUT)

SCOPES = ("in", "out", "inout")


class Intent(Enum):
    BLOCK = "block"
    ALLOW = "allow"
    UNBLOCK = "unblock"
    UNALLOW = "unallow"

    @property
    def installs(self) -> bool:
        return self in (Intent.BLOCK, Intent.ALLOW)

    @property
    def denies(self) -> bool:
        return self in (Intent.BLOCK, Intent.UNBLOCK)


@dataclass(frozen=True)
class FirewallIntent:
    intent: Intent
    address: str
    scope: str = "inout"
    ports: str = ""
    protocol: Optional[str] = None

    @property
    def family(self) -> int:
        return check_ip(self.address)


class CommandAction(Enum):
    INSERT = "-I"
    DELETE = "-D"
    APPEND = "-A"
    NEW_CHAIN = "-N"


@dataclass(frozen=True)
class FirewallCommand:
    family: int
    chain: str
    action: CommandAction
    match: Tuple[str, ...] = ()
    target: str = ""
    position: Optional[int] = None
    table: str = "filter"

    def rule_args(self) -> List[str]:
        args = [self.action.value, self.chain]
        if self.action is CommandAction.INSERT and self.position:
            args.append(str(self.position))
        args.extend(self.match)
        if self.target:
            args.extend(["-j", self.target])
        return args

    def to_args(self, binary: str, wait: bool = False) -> List[str]:
        """argv for a single iptables/ip6tables invocation."""
        args = [binary]
        if wait:
            args.append("--wait")
        if self.table != "filter":
            args.extend(["-t", self.table])
        return args + self.rule_args()

    def to_restore_line(self) -> str:
        """Line for an iptables-restore table block."""
        if self.action is CommandAction.NEW_CHAIN:
            return f":{self.chain} - [0:0]"
        return " ".join(self.rule_args())

    @property
    def rule_key(self) -> Tuple:
        return (self.family, self.table, self.chain, self.match, self.target)


def _split_ports(ports: str) -> List[str]:
    return [port for port in ports.replace(";", ",").replace(" ", "").split(",") if port]


def _valid_port(text: str) -> bool:
    return text.isdigit() and 1 <= int(text) <= 65535


def normalize_ports(ports: str) -> str:
    """
    Canonical comma list of ports and ``low:high`` ranges ("" for all ports).

    Raises:
        ValueError: if ``ports`` is not a string or holds anything else
    """
    if not isinstance(ports, str):
        raise ValueError(f"ports must be a string, got {type(ports).__name__}")
    items = _split_ports(ports)
    for item in items:
        low, sep, high = item.partition(":")
        if not _valid_port(low) or (sep and not (_valid_port(high) and int(low) <= int(high))):
            raise ValueError(f"invalid port list [{ports}]")
    return ",".join(items)


class Executor(ABC):
    """Strategy that carries FirewallCommands to the packet filter."""

    @abstractmethod
    def execute(self, command: FirewallCommand) -> bool:
        """Run (or queue) one command. Returns True on success."""

    def flush(self) -> bool:
        return True


class ImmediateExecutor(Executor):
    """Run each command as its own iptables/ip6tables process."""

    def __init__(
        self,
        iptables: str = "/sbin/iptables",
        ip6tables: str = "/sbin/ip6tables",
        wait_lock: bool = False,
        timeout: float = 10.0,
        runner: Callable = subprocess.run
    ):
        self.binaries = {4: iptables, 6: ip6tables}
        self.wait_lock = wait_lock
        self.timeout = timeout
        self.runner = runner

    def execute(self, command: FirewallCommand) -> bool:
        cmd = command.to_args(self.binaries[command.family], wait=self.wait_lock)
        try:
            self.runner(cmd, check=True, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.CalledProcessError as e:
            # Deleting an absent rule or creating an existing chain is expected
            if command.action in (CommandAction.DELETE, CommandAction.NEW_CHAIN):
                logger.debug("Packet filter command had no effect", command=" ".join(cmd))
            else:
                logger.warning("Packet filter command failed", command=" ".join(cmd),
                               return_code=e.returncode, stderr=(e.stderr or "").strip())
            return False
        except subprocess.TimeoutExpired:
            logger.warning("Packet filter command timed out", command=" ".join(cmd), timeout=self.timeout)
            return False
        except FileNotFoundError:
            logger.error("Packet filter binary not found", binary=cmd[0])
            return False
        return True


class BufferedExecutor(Executor):
    """
    Collect commands and load them with iptables-restore --noflush.

    Duplicate inserts are collapsed and a delete cancels a buffered insert
    of the same rule, so the restore payload never references a missing rule.
    """

    def __init__(
        self,
        iptables_restore: str = "/sbin/iptables-restore",
        ip6tables_restore: str = "/sbin/ip6tables-restore",
        wait_lock: bool = False,
        timeout: float = 30.0,
        runner: Callable = subprocess.run
    ):
        self.binaries = {4: iptables_restore, 6: ip6tables_restore}
        self.wait_lock = wait_lock
        self.timeout = timeout
        self.runner = runner
        self._pending: Dict[Tuple[int, str], List[FirewallCommand]] = {}

    def execute(self, command: FirewallCommand) -> bool:
        queue = self._pending.setdefault((command.family, command.table), [])

        if command.action is CommandAction.DELETE:
            queue[:] = [
                queued for queued in queue
                if queued.action is CommandAction.NEW_CHAIN or queued.rule_key != command.rule_key
            ]
            return True

        for queued in queue:
            if queued.action is command.action and queued.rule_key == command.rule_key:
                return True
        queue.append(command)
        return True

    def pending(self, family: int) -> int:
        return sum(len(queue) for (fam, _), queue in self._pending.items() if fam == family)

    def render(self, family: int) -> str:
        """Restore payload for one family: a ``*table ... COMMIT`` block per table."""
        blocks = []
        for (fam, table), queue in sorted(self._pending.items()):
            if fam != family or not queue:
                continue
            # Chain declarations must precede the rules that reference them
            ordered = sorted(queue, key=lambda cmd: cmd.action is not CommandAction.NEW_CHAIN)
            lines = [f"*{table}"] + [cmd.to_restore_line() for cmd in ordered] + ["COMMIT"]
            blocks.append("\n".join(lines))
        if not blocks:
            return ""
        return "\n".join(blocks) + "\n"

    def flush(self) -> bool:
        success = True
        for family in sorted({fam for fam, _ in self._pending}):
            payload = self.render(family)
            if not payload:
                continue
            cmd = [self.binaries[family]]
            if self.wait_lock:
                cmd.append("--wait")
            cmd.append("--noflush")
            try:
                self.runner(cmd, input=payload, check=True, capture_output=True, text=True, timeout=self.timeout)
                logger.info("Loaded buffered packet filter rules", family=family, rules=self.pending(family))
            except subprocess.CalledProcessError as e:
                logger.error("Buffered rule load failed", binary=cmd[0], return_code=e.returncode,
                             stderr=(e.stderr or "").strip())
                success = False
            except subprocess.TimeoutExpired:
                logger.error("Buffered rule load timed out", binary=cmd[0], timeout=self.timeout)
                success = False
            except FileNotFoundError:
                logger.error("Packet filter restore binary not found", binary=cmd[0])
                success = False
        self._pending.clear()
        return success


class FirewallRuleEngine:
    """Maps FirewallIntents onto chain rules and runs them through an executor."""

    def __init__(
        self,
        executor: Executor,
        ipv6: bool = True,
        drop: str = "DROP",
        drop_out: str = "DROP",
        position: int = 1
    ):
        self.executor = executor
        self.ipv6 = ipv6
        self.drop = drop
        self.drop_out = drop_out
        self.position = position

    @classmethod
    def from_config(cls, config, executor: Executor) -> "FirewallRuleEngine":
        return cls(
            executor,
            ipv6=config.ipv6,
            drop=config.drop,
            drop_out=config.drop_out,
            position=config.rule_position,
        )

    def use_executor(self, executor: Executor) -> Executor:
        """Swap the executor, returning the previous one."""
        previous = self.executor
        self.executor = executor
        return previous

    def _port_matches(self, intent: FirewallIntent) -> List[Tuple[str, ...]]:
        ports = _split_ports(intent.ports)
        if not ports:
            return [()]
        protocols = [intent.protocol] if intent.protocol else ["tcp", "udp"]
        matches = []
        for protocol in protocols:
            if len(ports) == 1:
                matches.append(("-p", protocol, "--dport", ports[0]))
            else:
                matches.append(("-p", protocol, "-m", "multiport", "--dports", ",".join(ports)))
        return matches

    def commands_for(self, intent: FirewallIntent) -> List[FirewallCommand]:
        family = intent.family
        if not family:
            return []

        if intent.intent.denies:
            inbound, outbound, in_target, out_target = DENY_IN, DENY_OUT, self.drop, self.drop_out
        else:
            inbound, outbound, in_target, out_target = ALLOW_IN, ALLOW_OUT, "ACCEPT", "ACCEPT"

        directions = []
        if intent.scope in ("in", "inout"):
            directions.append((inbound, "-s", in_target))
        if intent.scope in ("out", "inout"):
            directions.append((outbound, "-d", out_target))

        commands = []
        for chain, flag, target in directions:
            for port_match in self._port_matches(intent):
                match = (flag, intent.address) + port_match
                commands.append(FirewallCommand(family, chain, CommandAction.DELETE, match, target))
                if intent.intent.installs:
                    commands.append(FirewallCommand(family, chain, CommandAction.INSERT, match, target,
                                                    position=self.position))
        return commands

    def apply(self, intent: FirewallIntent) -> bool:
        """
        Apply one intent. Installing is idempotent: any existing copy of the
        rule is deleted before it is inserted.

        Returns:
            bool: False if the intent was skipped or an insert failed
        """
        family = intent.family
        if not family:
            logger.warning("Ignoring firewall intent for invalid address", address=intent.address)
            return False
        if family == 6 and not self.ipv6:
            logger.warning("IPv6 disabled, skipping firewall intent",
                           address=intent.address, intent=intent.intent.value)
            return False
        if intent.scope not in SCOPES:
            logger.warning("Ignoring firewall intent with unknown scope", address=intent.address, scope=intent.scope)
            return False

        success = True
        for command in self.commands_for(intent):
            result = self.executor.execute(command)
            if command.action is CommandAction.INSERT and not result:
                success = False

        logger.debug("Applied firewall intent", address=intent.address, intent=intent.intent.value,
                     scope=intent.scope, ports=intent.ports or None)
        return success

    def setup_chains(self) -> bool:
        """Create the four chains and the INPUT/OUTPUT jumps into them."""
        families = [4, 6] if self.ipv6 else [4]
        # Inserted at position 1 in reverse, so the allow chains are consulted first
        jumps = (("INPUT", DENY_IN), ("INPUT", ALLOW_IN), ("OUTPUT", DENY_OUT), ("OUTPUT", ALLOW_OUT))

        success = True
        for family in families:
            for chain in CHAINS:
                self.executor.execute(FirewallCommand(family, chain, CommandAction.NEW_CHAIN))
            for parent, chain in jumps:
                self.executor.execute(FirewallCommand(family, parent, CommandAction.DELETE, target=chain))
                if not self.executor.execute(FirewallCommand(family, parent, CommandAction.INSERT,
                                                             target=chain, position=1)):
                    success = False
        logger.info("Firewall chains prepared", families=families)
        return success

    def flush(self) -> bool:
        return self.executor.flush()
