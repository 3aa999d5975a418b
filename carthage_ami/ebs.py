# Copyright (C) 2022, 2023, Hadron Industries, Inc.
# Carthage is free software; you can redistribute it and/or modify
# it under the terms of the GNU Lesser General Public License version 3
# as published by the Free Software Foundation. It is distributed
# WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the file
# LICENSE for details.

import asyncio

from carthage import *
from carthage.modeling import *
from .connection import AwsConnection, AwsManaged, run_in_executor

__all__ = []

def availability_zone_provider(index=0):
    '''
    Provide the name of an available availability zone in the connection's region::

        add_provider(InjectionKey('aws_availability_zone'), availability_zone_provider())

    :param index: Which of the available zones (sorted by name) to return.
    '''
    def callback(connection):
        r = connection.client.describe_availability_zones(
            Filters=[dict(Name='state', Values=['available'])])
        return sorted(z['ZoneName'] for z in r['AvailabilityZones'])

    @inject(connection=AwsConnection)
    async def availability_zone_inner(connection):
        zones = await run_in_executor(callback, connection)
        if index >= len(zones):
            raise LookupError(f'only {len(zones)} availability zones available in {connection.region}')
        return zones[index]
    return availability_zone_inner

__all__ += ['availability_zone_provider']

@inject_autokwargs(
    snapshot=InjectionKey('aws_volume_snapshot', _optional=NotPresent, _ready=False),
    )
class AwsVolume(AwsManaged, InjectableModel):

    resource_type = 'volume'
    resource_factory_method = 'Volume'

    volume_size = None
    volume_type = 'gp2'
    snapshot = None #: Snapshot from which volume will be created
    snapshot_id = None
    availability_zone = None

    async def pre_create_hook(self):
        await super().pre_create_hook()
        if not self.volume_size:
            self.volume_size = self._gfi(
                'volume_size',
                default=None if self.snapshot else 'error'
            )
        self.snapshot_id = None
        if self.snapshot:
            snapshot = await self.resolve_reference(self.snapshot)
            if isinstance(snapshot, str):
                self.snapshot_id = snapshot
            else:
                await snapshot.wait_for_available()
                self.snapshot_id = snapshot.id
        if not self.availability_zone:
            self.availability_zone = await self.ainjector.get_instance_async('aws_availability_zone')

    def do_create(self):
        create_args = {
            "VolumeType":self.volume_type,
            "TagSpecifications":self.resource_tags(),
            "AvailabilityZone":self.availability_zone,
        }
        if self.snapshot_id:
            create_args['SnapshotId'] = self.snapshot_id
        if self.volume_size:
            create_args['Size'] = self.volume_size
        self.mob = self.service_resource.create_volume(**create_args)

    async def delete(self):
        if not self.mob:
            await self.find()
        if not self.mob:
            return
        logger.info('Deleting %s', self)
        await run_in_executor(self.mob.delete)


    async def wait_for_available(self, expected_states=None):
        if expected_states is None:
            expected_states = {'creating'}
        tries = 0
        max_tries = self._gfi('aws_volume_timeout', 150)//5
        if self.mob.state == 'available':
            return
        if self.mob.state not in expected_states:
            raise RuntimeError(f'Unexpected state for {self}: {self.mob.state}')

        while tries < max_tries:
            if self.mob.state == 'available':
                return
            if self.mob.state not in expected_states:
                raise RuntimeError(f'Unexpected state for {self}: {self.mob.state}')
            await asyncio.sleep(5)
            await run_in_executor(self.mob.reload)
            tries += 1
        raise RuntimeError(f'{self} did not become available; state is {self.mob.state}')

__all__ += ['AwsVolume']

@inject_autokwargs(
    volume=InjectionKey('aws_snapshot_source', _optional=NotPresent, _ready=False),
    )
class AwsSnapshot(AwsManaged, InjectableModel):

    '''
    A snapshot of an :class:`AwsVolume`.  The volume comes from the
    *aws_snapshot_source* dependency, which may be provided by a model
    nested in the snapshot::

        class root_snapshot(AwsSnapshot):
            name = "root"

            @provides("aws_snapshot_source")
            class volume(AwsVolume):
                name = "root"
                volume_size = 8

    *volume* may also be set to a volume id.

    '''

    resource_type = 'snapshot'
    resource_factory_method = 'Snapshot'
    volume = None
    volume_id = ""

    @memoproperty
    def description(self):
        '''
        Description of the snapshot; defaults to name.
        If the description needs to be set, either subclass and override,
        or instantiate _ready=False and update the description before calling
        :meth:`async_become_ready`.
        '''
        return self.name

    async def pre_create_hook(self):
        if self.volume is None:
            self.volume = await self.ainjector.get_instance_async(
                InjectionKey('aws_snapshot_source', _ready=False))
        volume = await self.resolve_reference(self.volume)
        if isinstance(volume, str):
            self.volume_id = volume
        else:
            await volume.wait_for_available()
            self.volume_id = volume.id

    def do_create(self):
        self.mob = self.service_resource.create_snapshot(
            Description=self.description,
            VolumeId=self.volume_id,
            TagSpecifications=self.resource_tags(),
        )

    async def dynamic_dependencies(self):
        if isinstance(self.volume, AwsVolume):
            return [self.volume]
        return []

    async def wait_for_available(self):
        max_tries = self._gfi('aws_snapshot_timeout', 1800)//5
        tries = 0
        if self.mob.state == 'completed':
            return
        if self.mob.state != 'pending':
            raise RuntimeError(f'Unexpected state for {self}: {self.mob.state}')

        while tries < max_tries:
            if self.mob.state == 'completed':
                return
            if self.mob.state != 'pending':
                raise RuntimeError(f'Unexpected state for {self}: {self.mob.state}')
            await asyncio.sleep(5)
            await run_in_executor(self.mob.reload)
            tries += 1
        raise RuntimeError(f'{self} still pending after {max_tries*5} seconds')

    async def delete(self):
        if not self.mob:
            await self.find()
        if not self.mob:
            return
        logger.info('Deleting %s', self)
        await run_in_executor(self.mob.delete)

__all__ += ['AwsSnapshot']
