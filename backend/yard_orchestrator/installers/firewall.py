import shlex
from typing import List

from ..models import ManagedResource
from ..validation import ip_errors, name_errors, port_errors
from .base import Installer, Stage, apt_install


class FirewallInstaller(Installer):
    kind = "firewall"
    lock_scope = "host"
    schema = {"type": "object", "properties": {"ssh_port": {"type": "integer", "minimum": 1, "maximum": 65535}}}

    @classmethod
    def identifying_key(cls, config) -> str:
        return "ufw"

    def install_stages(self) -> List[Stage]:
        ssh_port = self.config.get("ssh_port") or self.host.ssh_port
        return [
            Stage("Installing firewall", [apt_install("ufw")]),
            Stage(
                "Configuring defaults",
                ["ufw default deny incoming", "ufw default allow outgoing", f"ufw allow {ssh_port}/tcp"],
            ),
            Stage(
                "Enabling firewall",
                [
                    "ufw --force enable",
                    'ufw status | grep -q "Status: active" || (echo "UFW is not active" && exit 1)',
                ],
            ),
        ]

    def uninstall_stages(self) -> List[Stage]:
        return [
            Stage("Disabling firewall", ["ufw --force disable"]),
            Stage("Removing firewall", ["apt-get purge -y -q ufw"]),
        ]

    def uninstall_errors(self) -> List[str]:
        rules = ManagedResource.objects.filter(host=self.host, kind="firewall_rule").exclude(status="uninstalled")
        if rules.exists():
            return ["Remove the host's firewall rules before removing the firewall"]
        return []


class FirewallRuleInstaller(Installer):
    """A single ufw allow/deny rule for a port, a port range, a source address, or both."""

    kind = "firewall_rule"
    schema = {
        "type": "object",
        "required": ["rule_type"],
        "properties": {
            "name": {"type": "string", "maxLength": 100},
            "port": {"type": "string"},
            "from_ip_address": {"type": "string"},
            "rule_type": {"type": "string", "enum": ["allow", "deny"]},
            "protocol": {"type": "string", "enum": ["tcp", "udp", "any"]},
        },
        "anyOf": [{"required": ["port"]}, {"required": ["from_ip_address"]}],
    }

    @classmethod
    def identifying_key(cls, config) -> str:
        if config.get("port"):
            return config["port"]
        return f"from:{config['from_ip_address']}"

    @classmethod
    def normalize(cls, config):
        config.setdefault("protocol", "tcp")
        config.setdefault("name", cls.identifying_key(config))
        return config

    @classmethod
    def check(cls, config, host) -> List[str]:
        errors = name_errors(config["name"])
        port = config.get("port")
        if port:
            errors += port_errors(port)
            if "-" in port and config["protocol"] == "any":
                errors.append("port ranges need a tcp or udp protocol")
        if config.get("from_ip_address"):
            errors += ip_errors(config["from_ip_address"])
        firewall_active = ManagedResource.objects.filter(host=host, kind="firewall", status="active").exists()
        if not firewall_active:
            errors.append("The firewall is not installed on this host")
        return errors

    def rule_spec(self) -> str:
        port = self.config.get("port")
        protocol = self.config.get("protocol", "tcp")
        source = self.config.get("from_ip_address")
        ufw_port = port.replace("-", ":") if port else ""
        if source and port:
            proto = f" proto {protocol}" if protocol != "any" else ""
            return f"{self.config['rule_type']}{proto} from {source} to any port {ufw_port}"
        if source:
            return f"{self.config['rule_type']} from {source}"
        suffix = f"/{protocol}" if protocol != "any" else ""
        return f"{self.config['rule_type']} {ufw_port}{suffix}"

    def install_stages(self) -> List[Stage]:
        comment = shlex.quote(f"shipyard {self.config.get('name', '')}".strip())
        return [
            Stage("Applying rule", [f"ufw {self.rule_spec()} comment {comment}"]),
            Stage("Reloading firewall", ["ufw reload"]),
        ]

    def uninstall_stages(self) -> List[Stage]:
        return [
            Stage("Removing rule", [f"ufw delete {self.rule_spec()}"]),
            Stage("Reloading firewall", ["ufw reload"]),
        ]
