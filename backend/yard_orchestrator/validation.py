import re
from typing import Any, Dict, List, Optional

from croniter import croniter
from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import validate_ipv46_address
from jsonschema import Draft202012Validator

from .errors import ValidationFault

PORT_PATTERN = re.compile(r"^\d{1,5}(-\d{1,5})?$")
DOMAIN_PATTERN = re.compile(r"^(?=.{1,253}$)(?!-)([a-z0-9-]{1,63}\.)+[a-z]{2,63}$")
NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 ._-]{0,99}$")
MAX_COMMAND_LENGTH = 1000

# Commands a scheduled or worker task must never run on a managed host.
DANGEROUS_COMMAND_PATTERNS = [
    re.compile(r"\brm\s+-[a-z]*r[a-z]*f?\s+/(\s|$|\*)"),
    re.compile(r"\bmkfs(\.\w+)?\b"),
    re.compile(r"\bdd\s+.*of=/dev/"),
    re.compile(r":\(\)\s*\{\s*:\|:&\s*\};:"),
    re.compile(r"\b(shutdown|reboot|halt|poweroff)\b"),
    re.compile(r">\s*/dev/sd[a-z]"),
    re.compile(r"\bchmod\s+-R\s+777\s+/(\s|$)"),
    re.compile(r"\bcurl\b[^|]*\|\s*(ba|z)?sh\b"),
    re.compile(r"\bwget\b[^|]*\|\s*(ba|z)?sh\b"),
]


def schema_errors(schema: Dict[str, Any], payload: Any) -> List[str]:
    validator = Draft202012Validator(schema)
    errors = []
    for error in sorted(validator.iter_errors(payload), key=lambda err: list(err.path)):
        location = ".".join(str(part) for part in error.path)
        errors.append(f"{location}: {error.message}" if location else error.message)
    return errors


def port_errors(port: str) -> List[str]:
    if not PORT_PATTERN.match(port):
        return ["port must be a single port or a range like 3000-3005"]
    bounds = [int(part) for part in port.split("-")]
    if any(value < 1 or value > 65535 for value in bounds):
        return ["port must be between 1 and 65535"]
    if len(bounds) == 2 and bounds[0] >= bounds[1]:
        return ["port range start must be lower than its end"]
    return []


def ip_errors(value: str, field: str = "from_ip_address") -> List[str]:
    address = value.split("/", 1)[0]
    try:
        validate_ipv46_address(address)
    except ValidationError:
        return [f"{field} must be an IPv4 or IPv6 address"]
    return []


def domain_errors(domain: str) -> List[str]:
    if not DOMAIN_PATTERN.match(domain.lower()):
        return ["domain must be a fully qualified domain name"]
    return []


def name_errors(name: str) -> List[str]:
    if not NAME_PATTERN.match(name):
        return ["name may contain letters, digits, spaces, dots, dashes and underscores"]
    return []


def command_errors(command: str) -> List[str]:
    if not command.strip():
        return ["command is required"]
    if len(command) > MAX_COMMAND_LENGTH:
        return [f"command must be at most {MAX_COMMAND_LENGTH} characters"]
    if "\n" in command or "\r" in command:
        return ["command must be a single line"]
    for pattern in DANGEROUS_COMMAND_PATTERNS:
        if pattern.search(command):
            return ["command contains a disallowed operation"]
    return []


def timeout_errors(timeout: Optional[int]) -> List[str]:
    if timeout is None:
        return []
    maximum = settings.SHIPYARD_TASK_MAX_TIMEOUT
    if timeout < 1 or timeout > maximum:
        return [f"timeout must be between 1 and {maximum} seconds"]
    return []


def raise_for(errors: List[str], message: str = "Invalid configuration") -> None:
    if errors:
        raise ValidationFault(message, errors)


def slugify_key(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "unnamed"


def cron_errors(expression: str) -> List[str]:
    fields = expression.split()
    if len(fields) != 5:
        return ["cron_expression must have exactly 5 fields"]
    if not croniter.is_valid(expression):
        return ["cron_expression is not a valid cron expression"]
    return []


# Operations a site command may not perform on top of the recurring task rules.
SITE_COMMAND_PATTERNS = [
    re.compile(r"[;&|`]|\$\(|\$\{"),
    re.compile(r"\bsudo\b"),
    re.compile(r"/dev/tcp/"),
    re.compile(r"\b(crontab|sysctl|insmod|rmmod|modprobe)\b"),
    re.compile(r"\b(userdel|usermod|groupdel|groupmod|passwd|chpasswd)\b"),
    re.compile(r"\b(nmap|masscan|hping3?|tcpdump)\b"),
    re.compile(r"/(\.ssh|\.aws|\.kube|\.docker)(/|\b)"),
    re.compile(r"/etc/(shadow|passwd|sudoers)"),
    re.compile(r"\b(systemctl|service)\s+(stop|disable|mask)\b"),
]


def site_command_errors(command: str) -> List[str]:
    errors = command_errors(command)
    if errors:
        return errors
    if "\0" in command:
        return ["command contains invalid characters"]
    for pattern in SITE_COMMAND_PATTERNS:
        if pattern.search(command):
            return ["command contains a disallowed operation; chain steps in a deploy script instead"]
    return []
