# Copyright Contributors to the Testing Farm project.
# SPDX-License-Identifier: Apache-2.0

import sys

import click

from .. import get_logger
from ..cascade import EXIT_FAILED
from ..controller import ReservationController


@click.command()
@click.option(
    '-r', '--reservation-id',
    metavar='ID',
    type=int,
    required=True,
    help='Reservation to serve.',
    envvar='QUARTERMASTER_RESERVATION_ID'
)
def cmd_root(reservation_id: int) -> None:
    """
    Serve a single reservation. Exit status ``0`` means there is nothing left to do for the monitor, ``1`` means
    the reservation failed and its request and computer were already updated.
    """

    logger = get_logger()

    # The failure cascade and the barrier end the process by raising SystemExit - it passes through the
    # controller's context manager, therefore teardown runs before the process exits with their status.
    with ReservationController(logger, reservation_id) as controller:
        if not controller.initialize():
            sys.exit(EXIT_FAILED)

    sys.exit(0)


if __name__ == '__main__':
    cmd_root()
