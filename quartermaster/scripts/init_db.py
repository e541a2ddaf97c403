# Copyright Contributors to the Testing Farm project.
# SPDX-License-Identifier: Apache-2.0

import sys
from typing import Any, Dict, List, Optional, Tuple, Type

import click
import gluetool.log
import gluetool.utils
import sqlalchemy
from gluetool.result import Error, Ok, Result

from .. import Failure, get_config, get_db, get_logger, safe_call
from ..db import DB, BlockAllocation, BlockComputer, Computer, ProcessingLog, Request, Reservation, execute_dml, \
    init_schema

#: Sections of the seed file, and the tables they populate. Order matters, records may refer to records
#: of preceding sections.
SEED_SECTIONS: List[Tuple[str, Type[Any]]] = [
    ('processing-logs', ProcessingLog),
    ('block-allocations', BlockAllocation),
    ('computers', Computer),
    ('block-computers', BlockComputer),
    ('requests', Request),
    ('reservations', Reservation)
]


def seed_db(
    logger: gluetool.log.ContextAdapter,
    db: DB,
    seed: Dict[str, Any]
) -> Result[int, Failure]:
    """
    Insert records described by the seed into the DB.

    .. code-block:: yaml

       computers:
         - id: 1
           hostname: box1
           state: reserved

       requests:
         - id: 1
           state: new
           laststate: new

       reservations:
         - id: 1
           request_id: 1
           computer_id: 1

    :returns: number of inserted records.
    """

    unknown_sections = set(seed.keys()) - {name for name, _ in SEED_SECTIONS}

    if unknown_sections:
        return Error(Failure('unknown seed sections', sections=sorted(unknown_sections)))

    inserted = 0

    with db.get_session(logger) as session:
        for section, model in SEED_SECTIONS:
            records: List[Dict[str, Any]] = seed.get(section) or []

            if records:
                logger.info(f'adding {len(records)} {section}')

            for record in records:
                r_insert = execute_dml(logger, session, sqlalchemy.insert(model).values(**record))

                if r_insert.is_error:
                    return Error(Failure.from_failure(
                        'failed to insert seed record',
                        r_insert.unwrap_error(),
                        section=section,
                        record=record
                    ))

                inserted += 1

    return Ok(inserted)


def _load_seed(logger: gluetool.log.ContextAdapter, seed_filepath: Optional[str]) -> Dict[str, Any]:
    if seed_filepath is None:
        r_seed = get_config('seed.yml')

    else:
        r_seed = safe_call(gluetool.utils.load_yaml, seed_filepath, logger=logger)

    if r_seed.is_error:
        r_seed.unwrap_error().handle(logger, label='failed to load seed')

        sys.exit(1)

    seed = r_seed.unwrap()

    if not isinstance(seed, dict):
        Failure('seed is not a mapping', seed_filepath=seed_filepath).handle(logger)

        sys.exit(1)

    return seed


@click.command()
@click.option(
    '--seed', 'seed_filepath',
    metavar='FILE',
    default=None,
    help='If specified, records described by this YAML file are added to the DB.'
)
@click.option(
    '--default-seed',
    is_flag=True,
    default=False,
    help='If set, records described by seed.yml from the configuration directory are added to the DB.'
)
def cmd_root(seed_filepath: Optional[str], default_seed: bool) -> None:
    logger = get_logger()
    db = get_db(logger, application_name='quartermaster-init-db')

    r_schema = init_schema(logger, db)

    if r_schema.is_error:
        r_schema.unwrap_error().handle(logger)

        sys.exit(1)

    if seed_filepath is None and not default_seed:
        logger.info('schema created, no seed requested')

        return

    seed = _load_seed(logger, seed_filepath)

    r_seed = seed_db(logger, db, seed)

    if r_seed.is_error:
        r_seed.unwrap_error().handle(logger)

        sys.exit(1)

    logger.info(f'added {r_seed.unwrap()} records')


if __name__ == '__main__':
    cmd_root()
