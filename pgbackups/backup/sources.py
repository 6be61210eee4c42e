"""
Container data source for database dumps.

DockerPostgresSource reads connection parameters from a running PostgreSQL
container's configuration and runs pg_dump inside it through the Docker
Engine API, streaming the dump into a local file object.
"""

import logging
from time import monotonic
from dataclasses import dataclass, field
from typing import Dict, List, Optional, BinaryIO

import docker
from docker.errors import DockerException, NotFound

from .errors import CredentialsUnavailable


logger = logging.getLogger(__name__)

PG_PORT = 5432
CREDENTIAL_VARS = ('POSTGRES_USER', 'POSTGRES_DB', 'POSTGRES_PASSWORD')


class SourceError(Exception):
    """Raised when a Docker call against the source fails."""
    pass


@dataclass(frozen=True)
class Credentials:
    user: str
    database: str
    password: str = field(repr=False)


class DockerPostgresSource:
    """
    Handler for PostgreSQL databases running in Docker containers.

    Credentials come from POSTGRES_USER, POSTGRES_DB and POSTGRES_PASSWORD in
    the container environment.
    """

    def __init__(self, client=None, base_url: Optional[str] = None, dump_timeout: Optional[float] = None):
        """
        Args:
            client: docker.DockerClient to use (default: connect on first use)
            base_url: Docker daemon URL; None reads DOCKER_HOST and friends
            dump_timeout: Seconds before a dump is abandoned (None waits forever)
        """
        self._client = client
        self.base_url = base_url
        self.dump_timeout = dump_timeout

    @property
    def client(self):
        if self._client is None:
            try:
                if self.base_url:
                    self._client = docker.DockerClient(base_url=self.base_url)
                else:
                    self._client = docker.from_env()
            except DockerException as e:
                raise SourceError(f"Cannot connect to Docker: {e}")
        return self._client

    def _get_container(self, name: str):
        """Return the container, or None if it does not exist."""
        try:
            return self.client.containers.get(name)
        except NotFound:
            return None
        except DockerException as e:
            raise SourceError(f"Failed to inspect container {name}: {e}")

    def is_running(self, container: str) -> bool:
        """Check if a container exists and is running."""
        found = self._get_container(container)
        return found is not None and found.status == 'running'

    def discover(self) -> List[str]:
        """
        List running containers that look like PostgreSQL instances.

        Matches names ending in -postgres or _postgres.
        """
        try:
            containers = self.client.containers.list()
        except DockerException as e:
            raise SourceError(f"Failed to list containers: {e}")

        return [
            c.name for c in containers
            if c.name.endswith('-postgres') or c.name.endswith('_postgres')
        ]

    @staticmethod
    def _environment(found) -> Dict[str, str]:
        env = {}
        for entry in found.attrs.get('Config', {}).get('Env') or []:
            key, _, value = entry.partition('=')
            env[key] = value
        return env

    def get_env(self, container: str, var_name: str) -> Optional[str]:
        """
        Read one environment variable from a container's configuration.

        Returns:
            The value, or None if the container or variable does not exist
        """
        found = self._get_container(container)
        if found is None:
            return None
        return self._environment(found).get(var_name)

    def resolve_credentials(self, container: str) -> Credentials:
        """
        Read PostgreSQL credentials from the container environment.

        Raises:
            CredentialsUnavailable: If the container is not running or any
                field is missing or empty
        """
        try:
            found = self._get_container(container)
        except SourceError as e:
            raise CredentialsUnavailable(str(e))

        if found is None or found.status != 'running':
            raise CredentialsUnavailable(f"Container {container} is not running")

        env = self._environment(found)
        for var_name in CREDENTIAL_VARS:
            if not env.get(var_name):
                raise CredentialsUnavailable(f"Failed to get {var_name} from {container}")

        credentials = Credentials(
            user=env['POSTGRES_USER'],
            database=env['POSTGRES_DB'],
            password=env['POSTGRES_PASSWORD']
        )
        logger.info(f"Retrieved credentials for database: {credentials.database} (user: {credentials.user})")
        return credentials

    def run_dump(self, container: str, credentials: Credentials, sink: BinaryIO):
        """
        Run pg_dump inside the container, writing the plain SQL dump to sink.

        Raises:
            SourceError: If pg_dump exits non-zero, times out or Docker fails
        """
        logger.info(f"Running pg_dump for database {credentials.database}...")

        cmd = ['pg_dump', '-h', 'localhost', '-p', str(PG_PORT), '-U', credentials.user, credentials.database]
        api = self.client.api
        stderr = bytearray()
        started = monotonic()

        try:
            exec_id = api.exec_create(
                container, cmd,
                stdout=True, stderr=True,
                environment={'PGPASSWORD': credentials.password}
            )['Id']

            for out, err in api.exec_start(exec_id, stream=True, demux=True):
                if out:
                    sink.write(out)
                if err:
                    stderr.extend(err)
                if self.dump_timeout and monotonic() - started > self.dump_timeout:
                    raise SourceError(f"pg_dump timed out after {self.dump_timeout}s for {credentials.database}")

            exit_code = api.exec_inspect(exec_id).get('ExitCode')
        except DockerException as e:
            raise SourceError(f"pg_dump failed for {credentials.database}: {e}")

        if exit_code != 0:
            message = stderr.decode('utf-8', 'replace').strip()
            raise SourceError(f"pg_dump failed for {credentials.database} (exit {exit_code}): {message}")

    def list_tables(self, container: str, credentials: Credentials) -> List[str]:
        """
        List tables in the public schema.

        Returns an empty list if the query fails.
        """
        found = self._get_container(container)
        if found is None:
            return []

        try:
            result = found.exec_run(
                ['psql', '-h', 'localhost', '-p', str(PG_PORT),
                 '-U', credentials.user, '-d', credentials.database, '-t', '-c',
                 "SELECT tablename FROM pg_tables WHERE schemaname = 'public' ORDER BY tablename;"],
                environment={'PGPASSWORD': credentials.password},
                stderr=False
            )
        except DockerException as e:
            logger.warning(f"Could not list tables in {container}: {e}")
            return []

        if result.exit_code != 0:
            return []
        output = result.output.decode('utf-8', 'replace')
        return [line.strip() for line in output.splitlines() if line.strip()]


def create_source(config) -> DockerPostgresSource:
    """Build the container data source from app configuration."""
    timeout = config.get('DUMP_TIMEOUT')
    return DockerPostgresSource(
        base_url=config.get('DOCKER_BASE_URL') or None,
        dump_timeout=float(timeout) if timeout else None
    )
