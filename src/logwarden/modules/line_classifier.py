"""
LogWarden Line Classifier

Maps a raw log line plus the category of the log it came from to a
ClassifiedEvent. Every category owns an ordered table of rules; the first
rule whose pattern matches wins, so specific patterns are listed ahead of
catch-all ones. A line that matches nothing is the normal case and yields
None.

Syslog headers ("Mon DD HH:MM:SS host prog[pid]: ") are optional for the
syslog based services so bare message bodies classify the same way.
"""

import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Match, Optional, Pattern, Tuple

from logwarden.modules.address_set import check_ip, normalize_ip, unwrap_mapped


@dataclass(frozen=True)
class ClassifiedEvent:
    """One security-relevant log line."""
    reason: str
    address: str
    account: str = ""
    service: str = ""
    source: str = ""
    detail: str = ""
    actionable: bool = True


Extractor = Callable[["LineClassifier", Match, str], Optional[Dict[str, str]]]


@dataclass(frozen=True)
class Rule:
    pattern: Pattern
    reason: str
    service: str
    # Rule only applies while its service has a trigger configured
    toggled: bool = True
    actionable: bool = True
    # Normalize and validate the "ip" group; a failed validation ends the category
    address: bool = True
    exclude: Optional[Pattern] = None
    strip_port: bool = False
    ip_transform: Optional[Callable[[str], str]] = None
    extract: Optional[Extractor] = None


def _rule(pattern: str, reason: str, service: str, exclude: Optional[str] = None, **options) -> Rule:
    return Rule(
        pattern=re.compile(pattern),
        reason=reason,
        service=service,
        exclude=re.compile(exclude) if exclude else None,
        **options
    )


def _syslog(program: str) -> str:
    """Optional syslog header ending in ``program: ``."""
    return rf"^(?:(?:\S+|\S+\s+\d+\s+\S+) (?:\S+ )?{program}: )?"


STAMP = r"^(?:\S+|\S+\s+\d+\s+\S+) \S+ "
APACHE_ERROR = (
    r"^\[\S+\s+\S+\s+\S+\s+\S+\s+\S+\] \[(?:\S*:)?error\] (?:\[pid \d+(?::tid \d+)?\] )?"
    r"\[(?:client|remote) (?P<ip>\S+)\] (?:\w+: )?"
)
MODSEC_APACHE = (
    r"^\[\S+\s+\S+\s+\S+\s+\S+\s+\S+\] \[(?:\S*:)?error\] (?:\[pid \d+(?::tid \d+)?\] )?"
    r"\[(?:client|remote) (?P<ip>\S+)\](?: \[client \S+\])? (?:\w+: )?ModSecurity:(?:(?: \[[^\]]+\])*)? Access denied"
)
DOVECOT_FAILURE = (
    r"(?:Disconnected: )?(?:Aborted login(?: by logging out)?|Connection closed|Disconnected|Disconnected: Inactivity)"
    r"(?::\s*\S+\sfailed: Connection reset by peer)?(?:\s*\(auth failed, \d+ attempts(?: in \d+ secs)?\))?: "
    r"(?:user=(?P<acc><\S*>)?, )?(?:method=\S+, )?rip=(?P<ip>\S+), lip="
)
DOVECOT_INFO_FAILURE = (
    r"(?:Aborted login(?: by logging out)?|Connection closed|Disconnected|Disconnected: Inactivity)"
    r"(?:\s*\(auth failed, \d+ attempts(?: in \d+ secs)?\))?: "
    r"(?:user=(?P<acc><\S*>)?, )?(?:method=\S+, )?rip=(?P<ip>\S+), lip="
)
PROFTPD = r"^(?:\S+|\S+\s+\d+\s+\S+) \S+ proftpd\[\d+\]:? \S+ \([^\[]+\[(?P<ip>\S+)\]\)(?: -)?:? "
PAM_FAILURE_TAIL = r"authentication failure; logname=\S*\s+\S+\s+\S+\s+\S+\s+ruser=(?P<src>\S+)\s+\S+\s+user=(?P<acc>\S+)\s*$"
SU_HEADER = r"^(?:(?:\S+|\S+\s+\d+\s+\S+) (?:\S+ )?)?"
KERNEL_FIREWALL = r"^(?:\S+|\S+\s+\d+\s+\S+) \S+ kernel(?:\[\d+\])?:\s(?:\[[^\]]+\]\s)?Firewall:"

HOSTNAME = re.compile(r'\] \[hostname "([^"]+)"\] \[')
RULE_ID = re.compile(r'\[id "(\d+)"\]')
QUOTED = re.compile(r'".*"')
PORT_SUFFIX = re.compile(r"^(.*):\d+$")


def _modsec_extras(classifier: "LineClassifier", match: Match, line: str) -> Dict[str, str]:
    domain = HOSTNAME.search(line)
    rule_id = RULE_ID.search(line)
    return {
        "detail": domain.group(1) if domain else "",
        "ruleid": rule_id.group(1) if rule_id else "unknown",
    }


def _port_scan(classifier: "LineClassifier", match: Match, line: str) -> Optional[Dict[str, str]]:
    return classifier.port_scan_details(line)


def _relay(classifier: "LineClassifier", match: Match, line: str) -> Optional[Dict[str, str]]:
    return classifier.relay_details(line)


def _script(classifier: "LineClassifier", match: Match, line: str) -> Optional[Dict[str, str]]:
    return classifier.script_details(match.group("dir"))


def _sudo_summary(classifier: "LineClassifier", match: Match, line: str) -> Optional[Dict[str, str]]:
    items = re.split(r"\s+;\s+", match.group("rest"))
    if items[0].startswith("TTY") and len(items) > 2:
        user = re.match(r"^USER=(\S+)$", items[2])
        if user:
            return {"acc": user.group(1), "reason": "Successful login"}
    elif items[0].startswith("user NOT in sudoers") and len(items) > 3:
        user = re.match(r"^USER=(\w+)$", items[3])
        if user:
            return {"acc": user.group(1), "reason": "Failed login"}
    return None


def _dist_smtp(classifier: "LineClassifier", match: Match, line: str) -> Optional[Dict[str, str]]:
    return classifier.dist_smtp_details(line)


def _pureftpd_address(value: str) -> str:
    return value.replace("_", ":")


SSH_FAILED = "Failed SSH login from"
SSHD = _syslog(r"sshd\[\d+\]")
DOVECOT = r"^(?:(?:\S+|\S+\s+\d+\s+\S+) \S+ dovecot(?:\[\d+\])?: )?"

RULES: Dict[str, Tuple[Rule, ...]] = {
    "ssh": (
        _rule(SSHD + r"pam_unix\(sshd:auth\): authentication failure; logname=\S* uid=\S* euid=\S* tty=\S* "
                     r"ruser=\S* rhost=(?P<ip>\S+)(?:\s+user=(?P<acc>\S+))?", SSH_FAILED, "sshd"),
        _rule(SSHD + r"Failed none for (?P<acc>\S*) from (?P<ip>\S+) port \S+", SSH_FAILED, "sshd"),
        _rule(SSHD + r"Failed password for (?:invalid user |illegal user )?(?P<acc>\S*) from (?P<ip>\S+)"
                     r"(?: port \S+ \S+\s*)?", SSH_FAILED, "sshd"),
        _rule(SSHD + r"Failed keyboard-interactive(?:/pam)? for (?:invalid user )?(?P<acc>\S*) from (?P<ip>\S+) port \S+",
              SSH_FAILED, "sshd"),
        _rule(SSHD + r"Invalid user (?P<acc>\S*) from (?P<ip>\S+)", SSH_FAILED, "sshd"),
        _rule(SSHD + r"User (?P<acc>\S*) from (?P<ip>\S+)\s* not allowed because not listed in AllowUsers",
              SSH_FAILED, "sshd"),
        _rule(SSHD + r"Did not receive identification string from (?P<ip>\S+)", SSH_FAILED, "sshd"),
        _rule(SSHD + r"refused connect from (?P<ip>\S+)", SSH_FAILED, "sshd"),
        _rule(SSHD + r"error: maximum authentication attempts exceeded for \S* from (?P<ip>\S+)", SSH_FAILED, "sshd"),
        _rule(SSHD + r"Illegal user (?P<acc>\S*) from (?P<ip>\S+)", SSH_FAILED, "sshd"),
    ),
    "mail-auth": (
        _rule(DOVECOT + r"pop3-login: " + DOVECOT_FAILURE, "Failed POP3 login from", "pop3d"),
        _rule(DOVECOT + r"imap-login: " + DOVECOT_FAILURE, "Failed IMAP login from", "imapd"),
        _rule(r"^(?:\S+|\S+\s+\d+\s+\S+) pop3-login(?:\[\d+\])?: Info: " + DOVECOT_INFO_FAILURE,
              "Failed POP3 login from", "pop3d"),
        _rule(r"^(?:\S+|\S+\s+\d+\s+\S+) imap-login(?:\[\d+\])?: Info: " + DOVECOT_INFO_FAILURE,
              "Failed IMAP login from", "imapd"),
    ),
    "ftp": (
        _rule(r"^(?:(?:\S+|\S+\s+\d+\s+\S+) \S+ )?pure-ftpd(?:\[\d+\])?: \(\?@(?P<ip>\S+)\) \[WARNING\] "
              r"Authentication failed for user \[(?P<acc>\S*)\]", "Failed FTP login from", "ftpd",
              ip_transform=_pureftpd_address),
        _rule(PROFTPD + r"- no such user '(?P<acc>\S*)'", "Failed FTP login from", "ftpd"),
        _rule(PROFTPD + r"USER (?P<acc>\S*) no such user found from", "Failed FTP login from", "ftpd"),
        _rule(PROFTPD + r"- SECURITY VIOLATION", "Failed FTP login from", "ftpd"),
        _rule(PROFTPD + r"- USER (?P<acc>\S*) \(Login failed\): Incorrect password", "Failed FTP login from", "ftpd"),
        _rule(r'^\S+\s+\S+\s+\d+\s+\S+\s+\d+ \[pid \d+\] \[(?P<acc>\S+)\] FAIL LOGIN: Client "(?P<ip>\S+)"',
              "Failed FTP login from", "ftpd"),
        _rule(STAMP + r"vsftpd\[\d+\]: pam_unix\(\S+\): authentication failure; logname=\S*\s+\S+\s+\S+\s+\S+\s+"
                      r"ruser=\S*\s+rhost=(?P<ip>\S+)(?:\s+user=(?P<acc>\S*))?", "Failed FTP login from", "ftpd"),
        _rule(STAMP + r"vsftpd\(pam_unix\)\[\d+\]: authentication failure; logname=\S*\s+\S+\s+\S+\s+\S+\s+"
                      r"ruser=\S*\s+rhost=(?P<ip>\S+)(?:\s+user=(?P<acc>\S*))?", "Failed FTP login from", "ftpd"),
    ),
    "web-auth": (
        _rule(APACHE_ERROR + r"user (?P<acc>\S*)(?: not found:|: authentication failure for)",
              "Failed web page login from", "htpasswd", strip_port=True),
        _rule(r"^\S+ \S+ \[error\] \S+ \*\S+ no user/password was provided for basic authentication, "
              r"client: (?P<ip>\S+),", "Failed web page login from", "htpasswd"),
        _rule(r'^\S+ \S+ \[error\] \S+ \*\S+ user "(?P<acc>\S*)": password mismatch, client: (?P<ip>\S+),',
              "Failed web page login from", "htpasswd"),
        _rule(r'^\S+ \S+ \[error\] \S+ \*\S+ user "(?P<acc>\S*)" was not found in ".*?", client: (?P<ip>\S+),',
              "Failed web page login from", "htpasswd"),
        _rule(APACHE_ERROR + r"mod_qos\(\d+\): access denied,", "mod_qos triggered by", "mod_qos", strip_port=True),
    ),
    "modsec": (
        _rule(MODSEC_APACHE + r' with code \d\d\d \(phase 2\)\. File "[^"]*" rejected by the approver script '
                              r'"/etc/cxs/cxscgi\.sh"', "cxs mod_security triggered by", "cxs",
              strip_port=True, extract=_modsec_extras),
        _rule(MODSEC_APACHE + r" with code \d\d\d, \[Rule: 'FILES_TMPNAMES' '@inspectFile /etc/cxs/cxscgi\.sh'\] "
                              r'\[id "1010101"\]', "cxs mod_security triggered by", "cxs",
              strip_port=True, extract=_modsec_extras),
        _rule(r"^\[\S+\s+\S+\s+\S+\s+\S+\s+\S+\] \[error\] \[(?:client|remote) (?P<ip>\S+)\] mod_security: Access denied",
              "mod_security triggered by", "mod_security", extract=_modsec_extras),
        _rule(MODSEC_APACHE, "mod_security (id:{ruleid}) triggered by", "mod_security",
              strip_port=True, extract=_modsec_extras),
        _rule(r"^\S+ \S+ \[\S+\] \S+ \[(?:client|remote) (?P<ip>\S+)\] ModSecurity:(?:(?: \[[^\]]+\])*)? Access denied",
              "mod_security (id:{ruleid}) triggered by", "mod_security", extract=_modsec_extras),
        _rule(APACHE_ERROR + r"Caught race condition abuser", "symlink race condition triggered by", "symlink",
              exclude=r"/cgi-sys/suspendedpage\.cgi$", strip_port=True),
    ),
    "bind": (
        _rule(STAMP + r"named\[\d+\]: client(?: \S+)? (?P<ip>\S+)#\d+(?:\s\(\S+\))?:(?: view external:)? "
                      r"(?:update|zone transfer|query \(cache\)) '[^']*' denied$", "bind triggered by", "bind"),
    ),
    "suhosin": (
        _rule(STAMP + r"suhosin\[\d+\]: ALERT - .* \(attacker '(?P<ip>\S+)'", "Suhosin triggered by", "suhosin",
              exclude=r"script tried to increase memory_limit"),
    ),
    "cpanel": (
        _rule(r'^\[\S+\s+\S+\s+\S+\] \w+ \[\w+\] (?P<ip>\S+) - (?P<acc>\S+) "[^"]+" FAILED LOGIN',
              "Failed cPanel login from", "cpanel"),
        _rule(r'^(?P<ip>\S+) - (?P<acc>\S+)? \[\S+ \S+\] "[^"]*" FAILED LOGIN', "Failed cPanel login from", "cpanel"),
    ),
    "smtp-auth": (
        _rule(r"^\S+\s+\S+\s+(?:\[\d+\] )?\S+ authenticator failed for \S+ (?:\S+ )?\[(?P<ip>\S+)\](?::\S*:?)?"
              r"(?: I=\S+| \d+:)? 535 Incorrect authentication data(?: \(set_id=(?P<acc>\S+)\))?",
              "Failed SMTP AUTH login from", "smtpauth"),
        _rule(r"^\S+\s+\S+\s+(?:\[\d+\] )?SMTP call from (?:\S+ )?\[(?P<ip>\S+)\](?::\S*:?)?(?: I=\S+)? "
              r"dropped: too many syntax or protocol errors", "Exim syntax errors from", "eximsyntax"),
        _rule(r'^\S+\s+\S+\s+(?:\[\d+\] )?SMTP protocol error in "[^"]+" H=\S+ (?:\S+ )?\[(?P<ip>\S+)\]'
              r"(?::\S*:?)?(?: I=\S+)? AUTH command used when not advertised", "Exim syntax errors from", "eximsyntax"),
    ),
    "web-401": (
        _rule(APACHE_ERROR + r'(?:user  not found|user \w+ not found|user \w+: authentication failure for "/\w+/"):',
              "Apache 401 failures from", "apache401", strip_port=True),
    ),
    "web-403": (
        _rule(APACHE_ERROR + r"client denied by server configuration:", "Apache 403 failures from", "apache403",
              strip_port=True),
    ),
    "web-404": (
        _rule(r"^\[\S+\s+\S+\s+\S+\s+\S+\s+\S+\] \[(?:\S*:)?(?:error|info)\] (?:\[pid \d+(?::tid \d+)?\] )?"
              r"\[(?:client|remote) (?P<ip>\S+)\] (?:\w+: )?File does not exist:",
              "Apache 404 failures from", "apache404", strip_port=True),
    ),
    "port-scan": (
        _rule(KERNEL_FIREWALL, "Port scan detected from", "portscan", address=False, extract=_port_scan),
    ),
    "port-knock": (
        _rule(r"^(?:\S+|\S+\s+\d+\s+\S+) \S+ kernel(?:\[\d+\])?:\s(?:\[[^\]]+\]\s)?Knock: \*(?P<knock>\d+)_IN\*"
              r".*SRC=(?P<ip>\S+).*DPT=(?P<detail>\d+)", "Port knock from", "portknock",
              toggled=False, actionable=False),
    ),
    "uid": (
        _rule(KERNEL_FIREWALL + r".*OUT=\S+.*DPT=(?P<detail>\S+).*UID=(?P<acc>\d+)",
              "Outbound blocked for UID", "uid", toggled=False, actionable=False, address=False),
    ),
    "relay": (
        _rule(r"^\S+\s+\S+\s+(?:\[\d+\]\s)?\S+ <=", "Email relay from", "relay", address=False, extract=_relay),
    ),
    "su": (
        _rule(SU_HEADER + r"su(?:\[\d+\])?: pam_unix\(su(?:-l)?:session\): session opened for user\s+(?P<acc>\S+)"
                          r"\s+by\s+(?P<src>\S+)\s*$", "Successful login", "su",
              toggled=False, actionable=False, address=False),
        _rule(SU_HEADER + r"su(?:\[\d+\])?: pam_unix\(su(?:-l)?:auth\): " + PAM_FAILURE_TAIL, "Failed login", "su",
              toggled=False, actionable=False, address=False),
        _rule(SU_HEADER + r"su\(pam_unix\)\[\d+\]: session opened for user\s+(?P<acc>\S+)\s+by\s+(?P<src>\S+)\s*$",
              "Successful login", "su", toggled=False, actionable=False, address=False),
        _rule(SU_HEADER + r"su\(pam_unix\)\[\d+\]: " + PAM_FAILURE_TAIL, "Failed login", "su",
              toggled=False, actionable=False, address=False),
    ),
    "sudo": (
        _rule(SU_HEADER + r"sudo(?:\[\d+\])?: pam_unix\(sudo(?:-l)?:auth\): " + PAM_FAILURE_TAIL, "Failed login",
              "sudo", toggled=False, actionable=False, address=False),
        _rule(SU_HEADER + r"sudo\(pam_unix\)\[\d+\]: " + PAM_FAILURE_TAIL, "Failed login", "sudo",
              toggled=False, actionable=False, address=False),
        _rule(SU_HEADER + r"sudo(?:\[\d+\])?:\s+(?P<src>\S+)\s+:\s+(?P<rest>.*)$", "Successful login", "sudo",
              toggled=False, actionable=False, address=False, extract=_sudo_summary),
    ),
    "console": (
        _rule(STAMP + r"login(?:\[\d+\])?: ROOT LOGIN", "Root console login", "console",
              toggled=False, actionable=False, address=False),
    ),
    "ssh-login": (
        _rule(SSHD + r"Accepted (?P<detail>\S+) for (?P<acc>\S+) from (?P<ip>\S+) port \S+", "Successful SSH login",
              "sshd", toggled=False, actionable=False),
    ),
    "mail-login": (
        _rule(STAMP + r"pop3d(?:-ssl)?: LOGIN, user=(?P<acc>\S*), ip=\[(?P<ip>\S+)\], port=\S+",
              "Successful POP3 login", "pop3d", toggled=False, actionable=False),
        _rule(STAMP + r"imapd(?:-ssl)?: LOGIN, user=(?P<acc>\S*), ip=\[(?P<ip>\S+)\], port=\S+",
              "Successful IMAP login", "imapd", toggled=False, actionable=False),
        _rule(DOVECOT + r"pop3-login: Login: user=<(?P<acc>\S*)>, method=\S+, rip=(?P<ip>\S+), lip=",
              "Successful POP3 login", "pop3d", toggled=False, actionable=False),
        _rule(DOVECOT + r"imap-login: Login: user=<(?P<acc>\S*)>, method=\S+, rip=(?P<ip>\S+), lip=",
              "Successful IMAP login", "imapd", toggled=False, actionable=False),
    ),
    "script": (
        _rule(r"^\S+\s+\S+\s+(?:\[\d+\]\s)?cwd=(?P<dir>.*) \d+ args:", "Script sending mail from", "script",
              toggled=False, actionable=False, address=False, extract=_script),
        _rule(r"^\S+\s+\S+\s+(?:\[\d+\]\s)?\S+ H=localhost (?:.*)PWD=(?P<dir>.*)  REMOTE_ADDR=\S+$",
              "Script sending mail from", "script", toggled=False, actionable=False, address=False, extract=_script),
    ),
    "dist-ftp": (
        _rule(STAMP + r"pure-ftpd(?:\[\d+\])?: \(\?@(?P<ip>\S+)\) \[INFO\] (?P<acc>\S*) is now logged in$",
              "Distributed FTP logins to", "distftp", actionable=False, ip_transform=_pureftpd_address),
        _rule(PROFTPD + r"- USER (?P<acc>\S*): Login successful\.\s*$", "Distributed FTP logins to", "distftp",
              actionable=False),
    ),
    "dist-smtp": (
        _rule(STAMP + r"postfix/(?:submission/)?smtpd(?:\[\d+\])?: \w+: client=\S+\[(?P<ip>\S+)\], "
                      r"sasl_method=(?i:LOGIN|PLAIN|(?:CRAM|DIGEST)-MD5), sasl_username=(?P<acc>\S+)$",
              "Distributed SMTP AUTH logins to", "distsmtp", actionable=False),
        _rule(r"^\S+\s+\S+\s+(?:\[\d+\]\s)?\S+ <=", "Distributed SMTP AUTH logins to", "distsmtp",
              actionable=False, address=False, extract=_dist_smtp),
    ),
    "syslog-check": (
        _rule(STAMP + r"logwarden\[\d+\]: SYSLOG check \[(?P<detail>\S+)\]\s*$", "Syslog check", "syslogcheck",
              toggled=False, actionable=False, address=False),
    ),
}

CATEGORIES = tuple(RULES)


def _port_in_list(port: int, port_list: str) -> bool:
    for entry in port_list.replace(" ", "").split(","):
        if not entry:
            continue
        if ":" in entry:
            start, _, end = entry.partition(":")
            if start.isdigit() and end.isdigit() and int(start) <= port <= int(end):
                return True
        elif entry.isdigit() and int(entry) == port:
            return True
    return False


class LineClassifier:
    """
    Stateless classifier over the RULES tables.

    All host specific knowledge (enabled services, open ports, local and
    broadcast addresses, home directories) is fixed at construction.
    """

    def __init__(
        self,
        enabled_services: Optional[Iterable[str]] = None,
        apache_errport: int = 2,
        ps_ports: str = "",
        tcp_in: str = "",
        udp_in: str = "",
        local_addresses: Iterable[str] = (),
        broadcast_addresses: Iterable[str] = (),
        home_dirs: Iterable[str] = ("/home",),
        home_match: str = "",
    ):
        self.enabled_services = None if enabled_services is None else frozenset(enabled_services)
        self.apache_errport = apache_errport
        self.ps_ports = ps_ports.upper()
        self.tcp_in = tcp_in
        self.udp_in = udp_in
        self.local_addresses = frozenset(local_addresses)
        self.broadcast_addresses = frozenset(broadcast_addresses)
        self.home_dirs = tuple(home_dirs)
        self.home_match = re.compile(home_match) if home_match else None

    @classmethod
    def from_config(cls, config) -> "LineClassifier":
        return cls(
            enabled_services=config.enabled_services,
            apache_errport=config.apache_errport,
            ps_ports=config.ps_ports,
            tcp_in=config.tcp_in,
            udp_in=config.udp_in,
            local_addresses=config.own_addresses,
            broadcast_addresses=config.broadcast_addresses,
            home_dirs=config.home_dirs,
            home_match=config.home_match,
        )

    def _enabled(self, rule: Rule) -> bool:
        if not rule.toggled or self.enabled_services is None:
            return True
        return rule.service in self.enabled_services

    def classify(self, line: str, category: str, source: str = "") -> Optional[ClassifiedEvent]:
        """Return the event for the first matching rule of ``category``, or None."""
        rules = RULES.get(category)
        if not rules:
            return None

        line = line.replace("\n", "").replace("\r", "")
        for rule in rules:
            if not self._enabled(rule):
                continue
            match = rule.pattern.search(line)
            if not match:
                continue
            if rule.exclude and rule.exclude.search(line):
                continue
            return self._build(rule, match, line, source)
        return None

    def classify_any(self, line: str, categories: Iterable[str], source: str = "") -> Optional[ClassifiedEvent]:
        """Try each category in order; the first event wins."""
        for category in categories:
            event = self.classify(line, category, source)
            if event:
                return event
        return None

    def _build(self, rule: Rule, match: Match, line: str, source: str) -> Optional[ClassifiedEvent]:
        fields = {key: value or "" for key, value in match.groupdict().items()}
        if rule.extract:
            extra = rule.extract(self, match, line)
            if extra is None:
                return None
            fields.update(extra)

        address = fields.get("address", "")
        if rule.address:
            address = self._clean_address(fields.get("ip", ""), rule)
            if address is None:
                return None

        account = fields.get("acc", "")
        if account.startswith("<"):
            account = account[1:]
        if account.endswith(">") or account.endswith(":"):
            account = account[:-1]

        reason = fields.get("reason") or rule.reason
        if "{" in reason:
            reason = reason.format(**fields)

        detail = fields.get("detail") or fields.get("src", "")
        return ClassifiedEvent(
            reason=reason,
            address=address,
            account=account,
            service=rule.service,
            source=source,
            detail=detail,
            actionable=rule.actionable,
        )

    def _clean_address(self, raw: str, rule: Rule) -> Optional[str]:
        raw = unwrap_mapped(raw)
        if rule.ip_transform:
            raw = rule.ip_transform(raw)
        if rule.strip_port and self.apache_errport == 2 and not check_ip(raw):
            port_match = PORT_SUFFIX.match(raw)
            if port_match:
                raw = port_match.group(1)
        return normalize_ip(raw)

    # Category specific extraction

    def port_scan_details(self, line: str) -> Optional[Dict[str, str]]:
        if re.search(r"Firewall: \*INVALID\*", line) and "INVALID" not in self.ps_ports:
            return None

        match = re.search(r"IN=\S+.*SRC=(\S+).*DST=(\S+).*PROTO=(\w+).*DPT=(\d+)", line)
        if match:
            address, destination, protocol, port = match.groups()
            if ("BRD" not in self.ps_ports and protocol == "UDP"
                    and destination in self.broadcast_addresses and destination not in self.local_addresses):
                return None
            if "OPEN" not in self.ps_ports:
                if protocol == "TCP" and "*TCP_IN Blocked*" in line and _port_in_list(int(port), self.tcp_in):
                    return None
                if protocol == "UDP" and "*UDP_IN Blocked*" in line and _port_in_list(int(port), self.udp_in):
                    return None
            normalized = normalize_ip(address)
            if not normalized:
                return None
            return {"address": normalized, "detail": port}

        match = re.search(r"IN=\S+.*SRC=(\S+).*PROTO=(ICMP(?:v6)?)\b", line)
        if match:
            normalized = normalize_ip(match.group(1))
            if not normalized:
                return None
            return {"address": normalized, "detail": match.group(2)}
        return None

    def relay_details(self, line: str) -> Optional[Dict[str, str]]:
        stripped = QUOTED.sub('""', line)

        local = re.search(r" U=(\S+) P=local ", stripped)
        if local:
            return {"acc": local.group(1), "detail": "LOCALRELAY",
                    "reason": "Email relay (LOCALRELAY) from"}

        host = re.search(r" H=[^=]*\[(\S+)\]", stripped)
        if not host:
            return None
        raw = unwrap_mapped(host.group(1))
        if raw in ("127.0.0.1", "::1"):
            address = raw
        else:
            address = normalize_ip(raw)
            if not address:
                return None

        authenticated = re.search(
            r" A=(?:courier_plain|courier_login|dovecot_plain|dovecot_login|fixed_login|fixed_plain|login|plain):(\S*)",
            stripped,
        )
        if authenticated and re.search(r" P=(?:esmtpa|esmtpsa) ", stripped):
            return {"address": address, "acc": authenticated.group(1), "detail": "AUTHRELAY",
                    "reason": "Email relay (AUTHRELAY) from"}
        if re.search(r" P=(?:smtp|esmtp|esmtps) ", stripped):
            return {"address": address, "detail": "RELAY", "reason": "Email relay (RELAY) from"}
        return None

    def dist_smtp_details(self, line: str) -> Optional[Dict[str, str]]:
        """Authenticated exim submissions; local deliveries and loopback clients are skipped."""
        stripped = QUOTED.sub('""', line)
        if re.search(r" U=\S+ P=local ", stripped):
            return None
        host = re.search(r" H=[^=]*\[(\S+)\]", stripped)
        if not host:
            return None
        address = normalize_ip(host.group(1))
        if not address:
            return None
        authenticated = re.search(
            r" A=(?:courier_plain|courier_login|dovecot_plain|dovecot_login|fixed_login|fixed_plain|login|plain):(\S+)",
            stripped,
        )
        if authenticated and re.search(r" P=(?:esmtpa|esmtpsa) ", stripped):
            return {"address": address, "acc": authenticated.group(1)}
        return None

    def script_details(self, directory: str) -> Optional[Dict[str, str]]:
        if not directory:
            return None
        parts = directory.split("/")
        top = parts[1] if len(parts) > 1 else ""
        if top == "home":
            return {"detail": directory}
        for home in self.home_dirs:
            if home and directory.startswith(home):
                return {"detail": directory}
        if self.home_match and self.home_match.search(top):
            return {"detail": directory}
        return None
