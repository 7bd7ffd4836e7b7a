"""Registry Store.

Owns the coordination-store path layout:

    /instances/{id}/{registered,addr,name,version,region}
    /services/{name}/{id}
    /services/{name}/{version}/{id}
    /regions/{region}/{id}
    /hosts/{host}/{id}

Every leaf is ephemeral, so a registering process that loses its session is
removed from the layout by the store itself.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from svcwatch.core.coordination.core import CoordinationStore, join_path
from svcwatch.core.errors import (
    CoordinationConnectionError,
    CoordinationError,
    InvalidDataError,
    NoSuchPathError,
    PartialWriteError,
    PathExistsError,
    RegistrationConflict,
    RegistryError,
)
from svcwatch.core.service_registry.core import (
    BindAddr,
    MatchMode,
    ServiceDescriptor,
    ServiceQuery,
)

logger = logging.getLogger(__name__)

INSTANCES_PATH = "/instances"
SERVICES_PATH = "/services"
REGIONS_PATH = "/regions"
HOSTS_PATH = "/hosts"

ROOT_PATHS = (INSTANCES_PATH, SERVICES_PATH, REGIONS_PATH, HOSTS_PATH)

ACTIVE = "1"
INACTIVE = "0"


def instance_path(instance_id: str) -> str:
    return join_path(INSTANCES_PATH, instance_id)


def index_paths(descriptor: ServiceDescriptor) -> List[str]:
    """Index leaves written for a descriptor, in write order."""
    instance_id = descriptor.instance_id
    return [
        join_path(REGIONS_PATH, descriptor.region, instance_id),
        join_path(SERVICES_PATH, descriptor.name, instance_id),
        join_path(SERVICES_PATH, descriptor.name, descriptor.version, instance_id),
        join_path(HOSTS_PATH, descriptor.address.host, instance_id),
    ]


class RegistryStore:
    """Registration and membership listing over a coordination store."""

    def __init__(
        self,
        coordination: CoordinationStore,
        match_mode: MatchMode = MatchMode.ANY,
    ):
        self.coordination = coordination
        self.match_mode = match_mode

    async def bootstrap(self) -> None:
        """Ensure the top-level layout exists."""
        for path in ROOT_PATHS:
            await self.coordination.ensure_path(path)

    def _instance_leaves(self, descriptor: ServiceDescriptor) -> List[Tuple[str, str]]:
        base = instance_path(descriptor.instance_id)
        # name goes last: a listing treats an instance without it as incomplete
        return [
            (join_path(base, "registered"), INACTIVE),
            (join_path(base, "addr"), str(descriptor.address)),
            (join_path(base, "version"), descriptor.version),
            (join_path(base, "region"), descriptor.region),
            (join_path(base, "name"), descriptor.name),
        ]

    async def register(self, descriptor: ServiceDescriptor) -> None:
        """Create the instance branch and its index entries.

        Raises:
            RegistrationConflict: The instance id is already registered.
            PartialWriteError: A later write failed; written paths were removed.
            CoordinationConnectionError: The session is unavailable.
        """
        logger.debug(f"Registering instance {descriptor.instance_id}")

        base = instance_path(descriptor.instance_id)
        await self.coordination.ensure_path(base)
        await self.coordination.ensure_path(join_path(REGIONS_PATH, descriptor.region))
        await self.coordination.ensure_path(join_path(SERVICES_PATH, descriptor.name, descriptor.version))
        await self.coordination.ensure_path(join_path(HOSTS_PATH, descriptor.address.host))

        writes = self._instance_leaves(descriptor) + [(path, "") for path in index_paths(descriptor)]
        written: List[str] = []

        for path, value in writes:
            try:
                if written:
                    await self.coordination.create(path, value, ephemeral=True)
                else:
                    await self._create_first_leaf(base, path, value)
            except PathExistsError as e:
                if not written:
                    raise RegistrationConflict(descriptor.instance_id) from None
                await self._fail_partial(descriptor, path, written, e)
            except CoordinationConnectionError:
                if written:
                    # A suspended session may still hold what was written
                    logger.warning(
                        f"Connection lost while registering {descriptor.instance_id} "
                        f"after {len(written)} write(s); removing them"
                    )
                    await self._rollback(written)
                raise
            except CoordinationError as e:
                await self._fail_partial(descriptor, path, written, e)
            written.append(path)

        logger.info(
            f"Registered instance {descriptor.instance_id} "
            f"for service {descriptor.name} ({descriptor.version}, {descriptor.region}) "
            f"at {descriptor.address}"
        )

    async def _create_first_leaf(self, base: str, path: str, value: str) -> None:
        try:
            await self.coordination.create(path, value, ephemeral=True)
        except NoSuchPathError:
            # Branch pruned as empty by a concurrent listing
            await self.coordination.ensure_path(base)
            await self.coordination.create(path, value, ephemeral=True)

    async def _rollback(self, written: List[str]) -> bool:
        """Delete ``written`` in reverse order; False if any delete failed."""
        rolled_back = True
        for path in reversed(written):
            try:
                await self.coordination.delete(path)
            except NoSuchPathError:
                continue
            except CoordinationError as e:
                rolled_back = False
                logger.error(f"Rollback of {path} failed: {e}")
        return rolled_back

    async def _fail_partial(
        self,
        descriptor: ServiceDescriptor,
        failed_path: str,
        written: List[str],
        cause: CoordinationError,
    ) -> None:
        """Remove what a failed registration wrote, then raise."""
        rolled_back = await self._rollback(written)

        logger.error(
            f"Registration of {descriptor.instance_id} failed at {failed_path} "
            f"(rolled_back={rolled_back})"
        )
        raise PartialWriteError(
            descriptor.instance_id,
            failed_path,
            list(written),
            rolled_back,
        ) from cause

    async def read_instance(self, instance_id: str) -> Optional[ServiceDescriptor]:
        """Read one instance's stored fields; None when absent or incomplete."""
        base = instance_path(instance_id)
        try:
            name = await self.coordination.get(join_path(base, "name"))
            region = await self.coordination.get(join_path(base, "region"))
            version = await self.coordination.get(join_path(base, "version"))
            addr = await self.coordination.get(join_path(base, "addr"))
        except NoSuchPathError:
            return None
        except InvalidDataError as e:
            logger.warning(f"Instance {instance_id} has unreadable data at {e.path}; skipping")
            return None

        try:
            address = BindAddr.from_string(addr)
        except ValueError:
            logger.warning(f"Instance {instance_id} has invalid address {addr!r}; skipping")
            return None

        return ServiceDescriptor(
            instance_id=instance_id,
            name=name,
            version=version,
            region=region,
            address=address,
        )

    async def set_active(self, instance_id: str, active: bool) -> None:
        """Advertise (or withdraw) readiness without deregistering."""
        logger.debug(f"Setting instance {instance_id} active={active}")
        await self.coordination.set(
            join_path(instance_path(instance_id), "registered"),
            ACTIVE if active else INACTIVE,
        )

    async def is_active(self, instance_id: str) -> bool:
        value = await self.coordination.get(join_path(instance_path(instance_id), "registered"))
        return value == ACTIVE

    async def deregister(self, instance_id: str) -> ServiceDescriptor:
        """Remove the instance branch and all of its index entries.

        Raises:
            NoSuchPathError: The instance is not registered.
        """
        descriptor = await self.read_instance(instance_id)
        if descriptor is None:
            raise NoSuchPathError(f"Instance '{instance_id}' is not registered", path=instance_path(instance_id))

        for path in index_paths(descriptor):
            try:
                await self.coordination.delete(path)
            except NoSuchPathError:
                continue

        try:
            await self.coordination.delete(instance_path(instance_id), recursive=True)
        except NoSuchPathError:
            pass

        logger.info(f"Deregistered instance {instance_id}")
        return descriptor

    async def update(self, descriptor: ServiceDescriptor) -> ServiceDescriptor:
        """Replace an instance's fields and index entries; returns the old descriptor.

        If writing the new descriptor fails, the old one is registered again
        before the error is re-raised.

        Raises:
            NoSuchPathError: The instance is not registered.
        """
        active = await self.is_active(descriptor.instance_id)
        previous = await self.deregister(descriptor.instance_id)
        try:
            await self.register(descriptor)
        except (CoordinationError, RegistryError):
            await self._restore(previous, active)
            raise
        if active:
            await self.set_active(descriptor.instance_id, True)
        logger.info(f"Updated instance {descriptor.instance_id}")
        return previous

    async def _restore(self, descriptor: ServiceDescriptor, active: bool) -> None:
        """Put back the descriptor a failed update removed."""
        try:
            await self.register(descriptor)
            if active:
                await self.set_active(descriptor.instance_id, True)
        except (CoordinationError, RegistryError) as e:
            logger.error(f"Could not restore instance {descriptor.instance_id} after failed update: {e}")
            return
        logger.warning(f"Update of {descriptor.instance_id} failed; previous registration restored")

    async def list_instances(self, query: Optional[ServiceQuery] = None) -> List[ServiceDescriptor]:
        """Read membership fresh from the store, bypassing any snapshot."""
        try:
            instance_ids = await self.coordination.children(INSTANCES_PATH)
        except NoSuchPathError:
            return []

        descriptors = []
        for instance_id in instance_ids:
            descriptor = await self.read_instance(instance_id)
            if descriptor is None:
                await self._prune_if_empty(instance_id)
                continue
            if query is None or query.matches(descriptor, self.match_mode):
                descriptors.append(descriptor)

        logger.debug(f"Listed {len(descriptors)} of {len(instance_ids)} instance node(s)")
        return descriptors

    async def _prune_if_empty(self, instance_id: str) -> None:
        """Delete an instance branch whose ephemeral leaves are all gone."""
        base = instance_path(instance_id)
        try:
            if await self.coordination.children(base):
                return
            await self.coordination.delete(base)
        except CoordinationConnectionError:
            raise
        except CoordinationError as e:
            # Already gone, or a registration refilled it
            logger.debug(f"Not pruning {base}: {e}")
            return
        logger.debug(f"Pruned empty instance branch {base}")

    async def _list_children(self, path: str) -> List[str]:
        try:
            return await self.coordination.children(path)
        except NoSuchPathError:
            return []

    async def list_services(self) -> List[str]:
        return await self._list_children(SERVICES_PATH)

    async def list_regions(self) -> List[str]:
        return await self._list_children(REGIONS_PATH)

    async def list_hosts(self) -> List[str]:
        return await self._list_children(HOSTS_PATH)
