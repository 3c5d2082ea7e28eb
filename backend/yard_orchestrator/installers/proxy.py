from typing import List

from ..models import ManagedResource
from .base import Installer, Stage, apt_install, write_file

NGINX_DEFAULTS = """
server_tokens off;
client_max_body_size 64m;
gzip on;
gzip_types text/plain text/css application/json application/javascript text/xml application/xml image/svg+xml;
"""

CATCH_ALL = """
server {
    listen 80 default_server;
    listen [::]:80 default_server;
    server_name _;
    return 444;
}
"""


class ReverseProxyInstaller(Installer):
    kind = "reverse_proxy"
    lock_scope = "host"

    @classmethod
    def identifying_key(cls, config) -> str:
        return "nginx"

    def install_stages(self) -> List[Stage]:
        return [
            Stage("Installing nginx", ["apt-get update -q", apt_install("nginx")]),
            Stage(
                "Configuring nginx",
                [
                    write_file("/etc/nginx/conf.d/shipyard.conf", NGINX_DEFAULTS),
                    "rm -f /etc/nginx/sites-enabled/default",
                    write_file("/etc/nginx/sites-available/000-catch-all", CATCH_ALL),
                    "ln -sf /etc/nginx/sites-available/000-catch-all /etc/nginx/sites-enabled/000-catch-all",
                    "nginx -t",
                ],
            ),
            Stage("Starting nginx", ["systemctl enable nginx", "systemctl restart nginx"]),
        ]

    def uninstall_stages(self) -> List[Stage]:
        return [
            Stage("Stopping nginx", ["systemctl disable --now nginx || true"]),
            Stage("Removing nginx", ["apt-get purge -y -q nginx nginx-common", "rm -rf /etc/nginx"]),
        ]

    def uninstall_errors(self) -> List[str]:
        sites = ManagedResource.objects.filter(host=self.host, kind="site").exclude(status="uninstalled")
        if sites.exists():
            return ["Remove the host's sites before removing the reverse proxy"]
        return []
