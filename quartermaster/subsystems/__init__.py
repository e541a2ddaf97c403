# Copyright Contributors to the Testing Farm project.
# SPDX-License-Identifier: Apache-2.0

"""
Handles of subsystems a reservation process controls: the management node it runs on, the target computer,
the optional VM host of the target, and the provisioning backend that powers the target on and off.

Concrete implementations are provided by drivers, registered with the handle class by their names.
"""

from typing import Any, Dict, Optional, Type, TypeVar

import gluetool.log
from gluetool.result import Error, Ok, Result

from .. import Failure, safe_call
from ..knobs import KNOB_MANAGEMENT_NODE_DRIVER
from ..store import ReservationData

HandleT = TypeVar('HandleT', bound='SubsystemHandle')


class SubsystemHandle(gluetool.log.LoggerMixin):
    """
    Base class of all subsystem handles.

    :param logger: logger to use for logging.
    :param data: snapshot of the reservation the handle serves.
    """

    drivername: str

    #: Drivers known to the handle class, each handle class keeps its own registry.
    _drivers_registry: Dict[str, Type['SubsystemHandle']] = {}

    def __init__(self, logger: gluetool.log.ContextAdapter, data: ReservationData) -> None:
        super().__init__(logger)

        self.data = data

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: driver={self.drivername}>'

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)

        # Kinds of handles get their own registry, drivers share the one of their kind.
        if '_drivers_registry' not in cls.__dict__ and 'drivername' not in cls.__dict__:
            cls._drivers_registry = {}

    @classmethod
    def register(cls, driver_class: Type[HandleT]) -> Type[HandleT]:
        cls._drivers_registry[driver_class.drivername] = driver_class

        return driver_class

    @classmethod
    def _instantiate(
        cls: Type[HandleT],
        logger: gluetool.log.ContextAdapter,
        driver_name: str,
        data: ReservationData
    ) -> Result[HandleT, Failure]:
        driver_class = cls._drivers_registry.get(driver_name)

        if driver_class is None:
            return Error(Failure(
                'cannot find subsystem driver',
                recoverable=False,
                kind=cls.__name__,
                drivername=driver_name
            ))

        r_handle = safe_call(driver_class, logger, data)

        if r_handle.is_error:
            return Error(Failure.from_failure(
                'failed to create subsystem handle',
                r_handle.unwrap_error(),
                kind=cls.__name__,
                drivername=driver_name
            ))

        handle = r_handle.unwrap()

        # A driver may report the failure, or raise an exception.
        r_sanity_call = safe_call(handle.sanity)

        r_sanity: Result[bool, Failure] = r_sanity_call.unwrap() if r_sanity_call.is_ok \
            else Error(r_sanity_call.unwrap_error())

        if r_sanity.is_error:
            return Error(Failure.from_failure(
                'subsystem handle failed sanity check',
                r_sanity.unwrap_error(),
                kind=cls.__name__,
                drivername=driver_name
            ))

        return Ok(handle)  # type: ignore[arg-type]

    def sanity(self) -> Result[bool, Failure]:
        """
        Do sanity checks after initializing the handle. Useful to check for driver configuration
        correctness or anything else.
        """

        return Ok(True)


class ManagementNodeHandle(SubsystemHandle):
    """
    Controls the management node, the machine the reservation process runs on.
    """


class TargetHandle(SubsystemHandle):
    """
    Controls the operating system of the reserved computer.
    """

    def __init__(self, logger: gluetool.log.ContextAdapter, data: ReservationData) -> None:
        super().__init__(logger, data)

        self.provisioner: Optional['ProvisioningHandle'] = None

    def set_provisioner(self, provisioner: 'ProvisioningHandle') -> None:
        self.provisioner = provisioner

    def _shutdown(self) -> Result[None, Failure]:
        raise NotImplementedError()

    def shutdown(self) -> Result[None, Failure]:
        """
        Shut the computer down. When the graceful shutdown fails, the computer is powered off by the provisioning
        backend, if there is one.
        """

        r_shutdown = self._shutdown()

        if r_shutdown.is_ok:
            return r_shutdown

        if self.provisioner is None:
            return Error(Failure.from_failure('failed to shut down computer', r_shutdown.unwrap_error()))

        self.logger.warning('graceful shutdown failed, powering off')

        return self.provisioner.power_off()


class VirtualHostHandle(SubsystemHandle):
    """
    Controls the operating system of the VM host, the computer the reserved virtual machine runs on.
    """


class ProvisioningHandle(SubsystemHandle):
    """
    Controls the provisioning backend of the reserved computer.
    """

    def __init__(self, logger: gluetool.log.ContextAdapter, data: ReservationData) -> None:
        super().__init__(logger, data)

        self.target: Optional[TargetHandle] = None

        #: VM host handle the backend resolved on its own, if it needed one.
        self.vmhost: Optional[VirtualHostHandle] = None

    def set_target(self, target: TargetHandle) -> None:
        self.target = target

    def power_off(self) -> Result[None, Failure]:
        raise NotImplementedError()

    def power_on(self) -> Result[None, Failure]:
        raise NotImplementedError()


class SubsystemFactory:
    """
    Builds handles of subsystems serving the given reservation, using drivers named by the computer record.
    """

    def __init__(self, logger: gluetool.log.ContextAdapter, data: ReservationData) -> None:
        self.logger = logger
        self.data = data

    def _build(
        self,
        handle_class: Type[HandleT],
        driver_name: str,
        label: str
    ) -> Result[HandleT, Failure]:
        self.logger.debug(f'building {label} handle with driver {driver_name}')

        r_handle = handle_class._instantiate(self.logger, driver_name, self.data)

        if r_handle.is_error:
            return Error(Failure.from_failure(
                f'failed to build {label} handle',
                r_handle.unwrap_error()
            ))

        self.logger.info(f'built {label} handle {r_handle.unwrap()}')

        return r_handle

    def build_management_handle(self) -> Result[ManagementNodeHandle, Failure]:
        return self._build(ManagementNodeHandle, KNOB_MANAGEMENT_NODE_DRIVER.value, 'management node')

    def build_target_handle(self) -> Result[TargetHandle, Failure]:
        return self._build(TargetHandle, self.data.os_driver, 'target')

    def build_vmhost_handle(self) -> Result[VirtualHostHandle, Failure]:
        if self.data.vmhost_os_driver is None:
            return Error(Failure(
                'computer is not a virtual machine',
                recoverable=False,
                computer_id=self.data.computer_id
            ))

        return self._build(VirtualHostHandle, self.data.vmhost_os_driver, 'VM host')

    def build_provisioning_handle(self) -> Result[ProvisioningHandle, Failure]:
        return self._build(ProvisioningHandle, self.data.provisioning_driver, 'provisioning')


# Register bundled drivers.
from . import localhost  # noqa: E402,F401
