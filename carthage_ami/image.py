# Copyright (C) 2022, 2023, Hadron Industries, Inc.
# Carthage is free software; you can redistribute it and/or modify
# it under the terms of the GNU Lesser General Public License version 3
# as published by the Free Software Foundation. It is distributed
# WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the file
# LICENSE for details.

from __future__ import annotations
import asyncio
import dataclasses
import typing

from botocore.exceptions import ClientError

from carthage import *
from carthage.dependency_injection import *
from carthage.modeling import *
from .connection import run_in_executor, AwsManaged, wait_for_state_change, error_code
from .ebs import AwsSnapshot

__all__ = []


@dataclasses.dataclass(frozen=True)
class EbsBlockDevice:

    '''
    An EBS block device of an image.

    When registering an image, unset fields take the AWS defaults
    except that *delete_on_termination* defaults to true and
    *volume_type* to ``standard``.  When used as the expected value
    for :func:`~carthage_ami.checks.check_ebs_block_device`, unset
    fields (and integer fields set to 0) are not compared.

    '''

    device_name: str = None
    #: A snapshot id, an :class:`~carthage_ami.AwsSnapshot` or an :class:`InjectionKey` for one
    snapshot: typing.Any = None
    volume_size: int = None
    volume_type: str = None
    delete_on_termination: bool = None
    encrypted: bool = None
    iops: int = None
    throughput: int = None

    def to_mapping(self, snapshot_id=None):
        if not self.device_name:
            raise ValueError('EBS block device requires a device_name')
        ebs = dict(
            DeleteOnTermination=True if self.delete_on_termination is None else self.delete_on_termination,
            VolumeType=self.volume_type or 'standard',
        )
        if snapshot_id:
            ebs['SnapshotId'] = snapshot_id
        if self.volume_size:
            ebs['VolumeSize'] = self.volume_size
        if self.encrypted is not None and not snapshot_id:
            # Encryption is inherited from the snapshot
            ebs['Encrypted'] = self.encrypted
        if self.iops:
            ebs['Iops'] = self.iops
        if self.throughput:
            ebs['Throughput'] = self.throughput
        return dict(DeviceName=self.device_name, Ebs=ebs)

__all__ += ['EbsBlockDevice']

@dataclasses.dataclass(frozen=True)
class EphemeralBlockDevice:

    device_name: str
    virtual_name: str

    def to_mapping(self):
        return dict(DeviceName=self.device_name, VirtualName=self.virtual_name)

__all__ += ['EphemeralBlockDevice']

def attributes_from_description(description:dict)-> dict:
    '''
    Turn an entry returned by *describe_images* into the attributes
    an :class:`AwsImage` reports.  Only fields that can be read back
    from AWS are included.
    '''
    root_device_name = description.get('RootDeviceName')
    ebs_block_devices = []
    ephemeral_block_devices = []
    root_snapshot_id = None
    for mapping in description.get('BlockDeviceMappings', []):
        if 'Ebs' in mapping:
            ebs = mapping['Ebs']
            ebs_block_devices.append(EbsBlockDevice(
                device_name=mapping['DeviceName'],
                snapshot=ebs.get('SnapshotId'),
                volume_size=ebs.get('VolumeSize'),
                volume_type=ebs.get('VolumeType'),
                delete_on_termination=ebs.get('DeleteOnTermination'),
                encrypted=ebs.get('Encrypted'),
                iops=ebs.get('Iops'),
                throughput=ebs.get('Throughput'),
            ))
            if mapping['DeviceName'] == root_device_name:
                root_snapshot_id = ebs.get('SnapshotId')
        elif 'VirtualName' in mapping:
            ephemeral_block_devices.append(EphemeralBlockDevice(
                device_name=mapping['DeviceName'],
                virtual_name=mapping['VirtualName']))
    ebs_block_devices.sort(key=lambda d: d.device_name)
    ephemeral_block_devices.sort(key=lambda d: d.device_name)
    return dict(
        id=description['ImageId'],
        name=description.get('Name'),
        description=description.get('Description'),
        architecture=description.get('Architecture'),
        ena_support=bool(description.get('EnaSupport', False)),
        sriov_net_support=description.get('SriovNetSupport'),
        boot_mode=description.get('BootMode'),
        kernel_id=description.get('KernelId'),
        ramdisk_id=description.get('RamdiskId'),
        root_device_name=root_device_name,
        root_snapshot_id=root_snapshot_id,
        virtualization_type=description.get('VirtualizationType'),
        image_location=description.get('ImageLocation'),
        ebs_block_devices=tuple(ebs_block_devices),
        ephemeral_block_devices=tuple(ephemeral_block_devices),
    )

__all__ += ['attributes_from_description']

class AwsImage(AwsManaged, InjectableModel):

    '''
    An AMI registered from EBS snapshots::

        class image(AwsImage):
            name = "my-image"
            root_device_name = "/dev/xvda"
            ebs_block_devices = (
                EbsBlockDevice(device_name="/dev/xvda", snapshot=InjectionKey("root_snapshot")),
            )

    Found images are located by id or by name among images owned by
    the account.

    '''

    resource_type = 'image'
    resource_factory_method = 'Image'

    description = None
    architecture = 'x86_64'
    ena_support = None
    sriov_net_support = None
    boot_mode = None
    kernel_id = None
    ramdisk_id = None
    root_device_name = None
    virtualization_type = 'hvm'
    ebs_block_devices: typing.Sequence[EbsBlockDevice] = ()
    ephemeral_block_devices: typing.Sequence[EphemeralBlockDevice] = ()

    #: Whether deleting the image also deletes its snapshots.  Images
    #registered from existing snapshots leave them alone.
    manage_ebs_snapshots = False

    _snapshot_ids: dict = None

    async def possible_ids_for_name(self):
        def callback():
            r = self.connection.client.describe_images(
                Owners=['self'],
                Filters=[dict(
                    Name='name',
                    Values=[self.name])])
            return [i['ImageId'] for i in r['Images'] if i['State'] not in ('deregistered', 'failed')]
        return await run_in_executor(callback)

    async def pre_create_hook(self):
        await super().pre_create_hook()
        if not self.ebs_block_devices and not self.ephemeral_block_devices:
            raise ValueError(f'{self}: at least one block device is required to register an image')
        self._snapshot_ids = {}
        for device in self.ebs_block_devices:
            if device.snapshot is None:
                continue
            snapshot = await self.resolve_reference(device.snapshot)
            if isinstance(snapshot, AwsSnapshot):
                await snapshot.wait_for_available()
                self._snapshot_ids[device.device_name] = snapshot.id
            else:
                self._snapshot_ids[device.device_name] = snapshot

    def block_device_mappings(self):
        snapshot_ids = self._snapshot_ids or {}
        mappings = []
        for device in self.ebs_block_devices:
            mappings.append(device.to_mapping(snapshot_ids.get(device.device_name)))
        for device in self.ephemeral_block_devices:
            mappings.append(device.to_mapping())
        return mappings

    def do_create(self):
        extra = {}
        if self.description: extra['Description'] = self.description
        if self.ena_support is not None: extra['EnaSupport'] = self.ena_support
        if self.sriov_net_support: extra['SriovNetSupport'] = self.sriov_net_support
        if self.boot_mode: extra['BootMode'] = self.boot_mode
        if self.kernel_id: extra['KernelId'] = self.kernel_id
        if self.ramdisk_id: extra['RamdiskId'] = self.ramdisk_id
        if self.root_device_name: extra['RootDeviceName'] = self.root_device_name
        r = self.connection.client.register_image(
            Name=self.name,
            Architecture=self.architecture,
            VirtualizationType=self.virtualization_type,
            BlockDeviceMappings=self.block_device_mappings(),
            TagSpecifications=self.resource_tags(),
            **extra)
        self.id = r['ImageId']
        logger.info('Registered %s as %s', self, self.id)
        self.mob = self.service_resource.Image(self.id)
        # describe_images may not see a new image immediately
        self.mob.wait_until_exists()
        self.mob.load()

    def find_from_id(self):
        # Executor context. Image.load cannot tell a deregistered image from a missing one.
        assert self.id
        try:
            r = self.connection.client.describe_images(ImageIds=[self.id])
            images = [i for i in r['Images'] if i['State'] != 'deregistered']
        except ClientError as e:
            if not error_code(e).startswith('InvalidAMIID'):
                raise
            images = []
        if not images:
            logger.warning('Failed to load %s', self)
            self.mob = None
            if not self.readonly:
                self.connection.invalid_ec2_resource(self.resource_type, self.id, name=self.name)
            return None
        self.mob = self.service_resource.Image(self.id)
        self.mob.meta.data = images[0]
        return self.mob

    async def post_create_hook(self):
        await wait_for_state_change(
            self, lambda obj: obj.mob.state if obj.mob else None,
            'available', ['pending'],
            timeout=self._gfi('aws_image_timeout', 2400))

    @property
    def root_snapshot_id(self):
        if not self.mob:
            return None
        return self.image_attributes()['root_snapshot_id']

    def image_attributes(self)-> dict:
        '''
        The attributes of the image as currently reported by AWS.
        '''
        assert self.mob, f'{self} has not been found'
        attributes = attributes_from_description(self.mob.meta.data)
        attributes['manage_ebs_snapshots'] = self.manage_ebs_snapshots
        return attributes

    async def get_snapshots(self):
        def callback():
            mappings = self.mob.block_device_mappings
            results = []
            for m in mappings:
                if 'Ebs' in m and m['Ebs'].get('SnapshotId'):
                    results.append(self.service_resource.Snapshot(m['Ebs']['SnapshotId']))
            return results
        return await run_in_executor(callback)

    async def dynamic_dependencies(self):
        # Snapshots in use by the image cannot be deleted before it is deregistered
        results = []
        with instantiation_not_ready():
            for device in self.ebs_block_devices:
                if isinstance(device.snapshot, InjectionKey):
                    results.append(await self.ainjector.get_instance_async(device.snapshot))
                elif isinstance(device.snapshot, AwsSnapshot):
                    results.append(device.snapshot)
        return results

    async def wait_for_deregistration(self, timeout=None):
        '''Wait until the image is deregistered or no longer visible.'''
        if timeout is None:
            timeout = self._gfi('aws_image_timeout', 2400)
        def callback():
            try:
                r = self.connection.client.describe_images(ImageIds=[self.id])
            except ClientError as e:
                if error_code(e).startswith('InvalidAMIID'):
                    return None
                raise
            if not r['Images']:
                return None
            return r['Images'][0]['State']
        while True:
            state = await run_in_executor(callback)
            if state in (None, 'deregistered'):
                return
            if timeout <= 0:
                raise RuntimeError(f'{self} still in state {state} after deregistration')
            await asyncio.sleep(5)
            timeout -= 5

    async def delete(self):
        if not self.mob:
            await self.find()
        if not self.mob:
            return
        snapshots = []
        if self.manage_ebs_snapshots:
            snapshots = await self.get_snapshots()
        logger.info('Deregistering %s', self)
        await run_in_executor(self.mob.deregister)
        await self.wait_for_deregistration()
        for s in snapshots:
            logger.info('Deleting snapshot %s of %s', s.id, self)
            await run_in_executor(s.delete)
        self.mob = None

__all__ += ['AwsImage']
