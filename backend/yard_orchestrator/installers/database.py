import shlex
from typing import Dict, List

from ..models import ManagedResource
from .base import Installer, Stage, apt_install, secret_forms

ENGINES: Dict[str, List[str]] = {
    "mysql": ["8.0", "8.4"],
    "mariadb": ["10.11", "11.4"],
    "postgresql": ["15", "16", "17"],
    "redis": ["7"],
}
DEFAULT_PORTS = {"mysql": 3306, "mariadb": 3306, "postgresql": 5432, "redis": 6379}
SERVICES = {"mysql": "mysql", "mariadb": "mariadb", "postgresql": "postgresql", "redis": "redis-server"}


class DatabaseInstaller(Installer):
    """One database engine per host; MySQL and MariaDB share a port so they exclude each other."""

    kind = "database"
    lock_scope = "host"
    schema = {
        "type": "object",
        "required": ["engine", "version"],
        "properties": {
            "engine": {"type": "string", "enum": sorted(ENGINES)},
            "version": {"type": "string"},
            "port": {"type": "integer", "minimum": 1, "maximum": 65535},
            "root_password": {"type": "string", "minLength": 12},
        },
    }

    @classmethod
    def identifying_key(cls, config) -> str:
        return config["engine"]

    @classmethod
    def normalize(cls, config):
        config.setdefault("port", DEFAULT_PORTS[config["engine"]])
        return config

    @classmethod
    def check(cls, config, host) -> List[str]:
        errors = []
        engine = config["engine"]
        if config["version"] not in ENGINES[engine]:
            errors.append(f"{engine} version must be one of {', '.join(ENGINES[engine])}")
        if engine in {"mysql", "mariadb"} and not config.get("root_password"):
            errors.append("root_password is required for MySQL and MariaDB")
        rival = {"mysql": "mariadb", "mariadb": "mysql"}.get(engine)
        if rival and ManagedResource.objects.filter(host=host, kind=cls.kind, identifying_key=rival).exclude(
            status="uninstalled"
        ).exists():
            errors.append(f"{rival} is already installed on this host")
        return errors

    @property
    def engine(self) -> str:
        return self.config["engine"]

    def install_stages(self) -> List[Stage]:
        engine = self.engine
        version = self.config["version"]
        port = self.config["port"]
        service = SERVICES[engine]
        if engine == "mysql":
            sql = _set_root_password_sql(self.config["root_password"], engine)
            return [
                Stage("Preparing", ["apt-get update -q"]),
                Stage(f"Installing MySQL {version}", [apt_install("mysql-server")]),
                Stage(
                    "Configuring",
                    [
                        f"sed -i 's/^bind-address.*/bind-address = 0.0.0.0/; s/^# port.*/port = {port}/' "
                        "/etc/mysql/mysql.conf.d/mysqld.cnf",
                        f"mysql -uroot -e {shlex.quote(sql)}",
                    ],
                    secrets=secret_forms(self.config["root_password"]),
                ),
                Stage("Starting service", [f"systemctl enable {service}", f"systemctl restart {service}"]),
            ]
        if engine == "mariadb":
            sql = _set_root_password_sql(self.config["root_password"], engine)
            return [
                Stage("Preparing", ["apt-get update -q", apt_install("curl", "ca-certificates")]),
                Stage(
                    "Adding repository",
                    [
                        "curl -fsSL https://r.mariadb.com/downloads/mariadb_repo_setup | "
                        f"bash -s -- --mariadb-server-version=mariadb-{version}",
                        "apt-get update -q",
                    ],
                ),
                Stage(f"Installing MariaDB {version}", [apt_install("mariadb-server")]),
                Stage(
                    "Configuring",
                    [
                        "sed -i 's/^bind-address.*/bind-address = 0.0.0.0/' /etc/mysql/mariadb.conf.d/50-server.cnf",
                        f"mariadb -uroot -e {shlex.quote(sql)}",
                    ],
                    secrets=secret_forms(self.config["root_password"]),
                ),
                Stage("Starting service", [f"systemctl enable {service}", f"systemctl restart {service}"]),
            ]
        if engine == "postgresql":
            conf_dir = f"/etc/postgresql/{version}/main"
            return [
                Stage("Preparing", ["apt-get update -q", apt_install("postgresql-common", "ca-certificates")]),
                Stage("Adding repository", ["/usr/share/postgresql-common/pgdg/apt.postgresql.org.sh -y"]),
                Stage(f"Installing PostgreSQL {version}", [apt_install(f"postgresql-{version}")]),
                Stage(
                    "Configuring",
                    [
                        f"sed -i \"s/^#\\?listen_addresses.*/listen_addresses = '*'/; s/^port = .*/port = {port}/\" "
                        f"{conf_dir}/postgresql.conf",
                    ],
                ),
                Stage("Starting service", [f"systemctl enable {service}", f"systemctl restart {service}"]),
            ]
        return [
            Stage("Preparing", ["apt-get update -q"]),
            Stage(f"Installing Redis {version}", [apt_install("redis-server")]),
            Stage("Configuring", [f"sed -i 's/^port .*/port {port}/; s/^supervised .*/supervised systemd/' /etc/redis/redis.conf"]),
            Stage("Starting service", [f"systemctl enable {service}", f"systemctl restart {service}"]),
        ]

    def uninstall_stages(self) -> List[Stage]:
        engine = self.engine
        service = SERVICES[engine]
        packages = {
            "mysql": "'mysql-*'",
            "mariadb": "'mariadb-*'",
            "postgresql": f"'postgresql-{self.config['version']}*'",
            "redis": "redis-server",
        }[engine]
        data_dirs = {
            "mysql": "/var/lib/mysql /etc/mysql",
            "mariadb": "/var/lib/mysql /etc/mysql",
            "postgresql": f"/var/lib/postgresql/{self.config['version']} /etc/postgresql/{self.config['version']}",
            "redis": "/var/lib/redis /etc/redis",
        }[engine]
        return [
            Stage("Stopping service", [f"systemctl disable --now {service} || true"]),
            Stage("Removing packages", [f"apt-get purge -y -q {packages}", "apt-get autoremove -y -q"]),
            Stage("Removing data", [f"rm -rf {data_dirs}"]),
        ]

    def uninstall_errors(self) -> List[str]:
        users = ManagedResource.objects.filter(
            host=self.host, kind="database_user", config_json__engine=self.engine
        ).exclude(status="uninstalled")
        if users.exists():
            return [f"Remove the {users.count()} {self.engine} user(s) before removing the engine"]
        return []


def _set_root_password_sql(password: str, engine: str) -> str:
    escaped = password.replace("\\", "\\\\").replace("'", "\\'")
    plugin = "WITH caching_sha2_password " if engine == "mysql" else ""
    return f"ALTER USER 'root'@'localhost' IDENTIFIED {plugin}BY '{escaped}'; FLUSH PRIVILEGES;"


PRIVILEGES = {
    "mysql": {"all": "ALL PRIVILEGES", "read_only": "SELECT", "read_write": "SELECT, INSERT, UPDATE, DELETE"},
    "postgresql": {"all": "ALL PRIVILEGES", "read_only": "CONNECT", "read_write": "CONNECT, TEMPORARY"},
}
SQL_NAME = "^[A-Za-z_][A-Za-z0-9_]{0,31}$"


class DatabaseUserInstaller(Installer):
    """A login on one of the host's database engines, plus the schemas it is granted.

    Schemas are created when missing and left in place on uninstall.
    """

    kind = "database_user"
    schema = {
        "type": "object",
        "required": ["engine", "username", "password"],
        "properties": {
            "engine": {"type": "string", "enum": ["mysql", "mariadb", "postgresql"]},
            "username": {"type": "string", "pattern": SQL_NAME},
            "password": {"type": "string", "pattern": "^[A-Za-z0-9!#%+,.:=?@^_~-]{12,128}$"},
            "host": {"type": "string", "pattern": "^[A-Za-z0-9.%:_-]{1,60}$"},
            "privileges": {"type": "string", "enum": ["all", "read_only", "read_write"]},
            "schemas": {"type": "array", "items": {"type": "string", "pattern": SQL_NAME}},
        },
    }

    @classmethod
    def identifying_key(cls, config) -> str:
        return f"{config['engine']}:{config['username']}"

    @classmethod
    def normalize(cls, config):
        config.setdefault("host", "%")
        config.setdefault("privileges", "all")
        config["schemas"] = sorted(set(config.get("schemas") or []))
        return config

    @classmethod
    def check(cls, config, host) -> List[str]:
        engine = ManagedResource.objects.filter(
            host=host, kind="database", identifying_key=config["engine"], status="active"
        ).first()
        if engine is None:
            return [f"{config['engine']} is not installed on this host"]
        if config["engine"] != "postgresql" and not (engine.config_json or {}).get("root_password"):
            return [f"{config['engine']} has no root password on record"]
        return []

    @property
    def engine(self) -> str:
        return self.config["engine"]

    def _database(self) -> ManagedResource:
        return ManagedResource.objects.get(host=self.host, kind="database", identifying_key=self.engine)

    def _root_password(self) -> str:
        return (self._database().config_json or {}).get("root_password", "")

    def _mysql(self, sql: str) -> str:
        return f"MYSQL_PWD={shlex.quote(self._root_password())} mysql -uroot -e {shlex.quote(sql)}"

    def _psql(self, sql: str) -> str:
        return f"psql -v ON_ERROR_STOP=1 -c {shlex.quote(sql)}"

    def _secrets(self) -> List[str]:
        if self.engine == "postgresql":
            return secret_forms(self.config["password"])
        return secret_forms(self.config["password"], self._root_password())

    def install_stages(self) -> List[Stage]:
        user, password = self.config["username"], self.config["password"]
        schemas = self.config["schemas"]
        secrets = self._secrets()
        if self.engine == "postgresql":
            grant = PRIVILEGES["postgresql"][self.config["privileges"]]
            create_role = (
                f"DO $$BEGIN IF NOT EXISTS (SELECT FROM pg_roles WHERE rolname = '{user}') "
                f"THEN CREATE ROLE {user} LOGIN PASSWORD '{password}'; "
                f"ELSE ALTER ROLE {user} LOGIN PASSWORD '{password}'; END IF; END$$;"
            )
            return [
                Stage(
                    "Creating schemas",
                    [f"psql -tAc \"SELECT 1 FROM pg_database WHERE datname = '{name}'\" | grep -q 1 || createdb {name}" for name in schemas],
                    user="postgres",
                ),
                Stage("Creating user", [self._psql(create_role)], user="postgres", secrets=secrets),
                Stage(
                    "Granting privileges",
                    [self._psql(f"GRANT {grant} ON DATABASE {name} TO {user};") for name in schemas],
                    user="postgres",
                ),
            ]
        grant = PRIVILEGES["mysql"][self.config["privileges"]]
        account = f"'{user}'@'{self.config['host']}'"
        return [
            Stage(
                "Creating schemas",
                [self._mysql(f"CREATE DATABASE IF NOT EXISTS `{name}`;") for name in schemas],
                secrets=secrets,
            ),
            Stage(
                "Creating user",
                [self._mysql(f"CREATE USER IF NOT EXISTS {account} IDENTIFIED BY '{password}'; ALTER USER {account} IDENTIFIED BY '{password}';")],
                secrets=secrets,
            ),
            Stage(
                "Granting privileges",
                [self._mysql(f"GRANT {grant} ON `{name}`.* TO {account};") for name in schemas]
                + [self._mysql("FLUSH PRIVILEGES;")],
                secrets=secrets,
            ),
        ]

    def uninstall_stages(self) -> List[Stage]:
        user = self.config["username"]
        if self.engine == "postgresql":
            drop = "; ".join(
                [f"REVOKE ALL PRIVILEGES ON DATABASE {name} FROM {user}" for name in self.config["schemas"]]
                + [f"DROP ROLE IF EXISTS {user}"]
            )
            return [Stage("Dropping user", [self._psql(f"{drop};")], user="postgres")]
        account = f"'{user}'@'{self.config['host']}'"
        return [
            Stage(
                "Dropping user",
                [self._mysql(f"DROP USER IF EXISTS {account}; FLUSH PRIVILEGES;")],
                secrets=self._secrets(),
            )
        ]
