# Copyright Contributors to the Testing Farm project.
# SPDX-License-Identifier: Apache-2.0

from gluetool.result import Ok, Result

from .. import Failure
from . import ManagementNodeHandle, ProvisioningHandle, TargetHandle, VirtualHostHandle


@ManagementNodeHandle.register
class LocalhostManagementNode(ManagementNodeHandle):
    """
    The management node is the machine running this very process.
    """

    drivername = 'localhost'


@TargetHandle.register
class LocalhostTarget(TargetHandle):
    """
    A dummy driver pretending the reserved computer is a localhost. Nothing is ever touched.
    """

    drivername = 'localhost'

    def _shutdown(self) -> Result[None, Failure]:
        self.logger.info(f'pretending to shut down {self.data.computer_name}')

        return Ok(None)


@VirtualHostHandle.register
class LocalhostVirtualHost(VirtualHostHandle):
    drivername = 'localhost'


@ProvisioningHandle.register
class LocalhostProvisioning(ProvisioningHandle):
    """
    A dummy provisioning backend with nothing to power on or off.
    """

    drivername = 'localhost'

    def power_off(self) -> Result[None, Failure]:
        self.logger.info(f'pretending to power off {self.data.computer_name}')

        return Ok(None)

    def power_on(self) -> Result[None, Failure]:
        self.logger.info(f'pretending to power on {self.data.computer_name}')

        return Ok(None)
