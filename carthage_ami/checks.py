# Copyright (C) 2024, Hadron Industries, Inc.
# Carthage is free software; you can redistribute it and/or modify
# it under the terms of the GNU Lesser General Public License version 3
# as published by the Free Software Foundation. It is distributed
# WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the file
# LICENSE for details.

'''
Checks run against images in AWS after a layout has been brought up
or torn down.  Every failed check raises :class:`CheckFailed` so that
pytest reports the message as an assertion failure.
'''

import asyncio
import re
import secrets

from botocore.exceptions import BotoCoreError, ClientError

from carthage import *

from .connection import AwsConnection, run_in_executor, error_code
from .image import AwsImage, EbsBlockDevice

__all__ = []

class CheckFailed(AssertionError): pass

__all__ += ['CheckFailed']

def random_name(prefix='carthage-ami-test'):
    return f'{prefix}-{secrets.token_hex(6)}'

__all__ += ['random_name']

@inject(connection=AwsConnection)
async def wait_for_image(image_id, *, connection, timeout=60, delay=5):
    '''
    Wait for *image_id* to become visible to *describe_images*.

    AWS is eventually consistent, so ``InvalidAMIID.NotFound`` is
    retried until *timeout* seconds have elapsed.  Any other error
    stops immediately.

    :returns: The image description.
    '''
    if not image_id:
        raise CheckFailed('No AMI ID is set')
    loop = asyncio.get_event_loop()
    deadline = loop.time()+timeout
    def callback():
        return connection.client.describe_images(ImageIds=[image_id])
    while True:
        try:
            r = await run_in_executor(callback)
            break
        except ClientError as e:
            if error_code(e) != 'InvalidAMIID.NotFound':
                raise CheckFailed(f'Unable to find AMI after retries: {e}') from e
            if loop.time() >= deadline:
                raise CheckFailed(f'Unable to find AMI after retries: {e}') from e
            logger.debug('%s not yet visible; retrying', image_id)
            await asyncio.sleep(delay)
        except BotoCoreError as e:
            raise CheckFailed(f'Unable to find AMI after retries: {e}') from e
    if len(r['Images']) == 0:
        raise CheckFailed('AMI not found')
    return r['Images'][0]

__all__ += ['wait_for_image']

def image_block_device(image:dict, device_name:str)-> dict:
    '''
    Return the block device mapping for *device_name* from an image description.
    '''
    devices = {}
    for mapping in image.get('BlockDeviceMappings', []):
        devices[mapping['DeviceName']] = mapping
    if device_name not in devices:
        raise CheckFailed(f"block device doesn't exist: {device_name}")
    return devices[device_name]

__all__ += ['image_block_device']

def check_ebs_block_device(mapping:dict, expected:EbsBlockDevice):
    '''
    Compare the EBS portion of *mapping* against *expected*.
    Fields of *expected* that are None are not compared; neither are *iops* or *volume_size* when 0.
    '''
    actual = mapping.get('Ebs')
    if actual is None:
        raise CheckFailed(f'{mapping.get("DeviceName")} is not an EBS block device')
    if expected.volume_type is not None:
        if expected.volume_type != actual.get('VolumeType'):
            raise CheckFailed(
                f'Volume type mismatch. Expected: {expected.volume_type} Got: {actual.get("VolumeType")}')
    if expected.delete_on_termination is not None:
        if expected.delete_on_termination != actual.get('DeleteOnTermination'):
            raise CheckFailed(
                f'DeleteOnTermination mismatch. Expected: {expected.delete_on_termination} Got: {actual.get("DeleteOnTermination")}')
    if expected.encrypted is not None:
        if expected.encrypted != actual.get('Encrypted'):
            raise CheckFailed(
                f'Encrypted mismatch. Expected: {expected.encrypted} Got: {actual.get("Encrypted")}')
    if expected.iops:
        if expected.iops != actual.get('Iops'):
            raise CheckFailed(
                f'IOPS mismatch. Expected: {expected.iops} Got: {actual.get("Iops")}')
    if expected.volume_size:
        if expected.volume_size != actual.get('VolumeSize'):
            raise CheckFailed(
                f'Volume Size mismatch. Expected: {expected.volume_size} Got: {actual.get("VolumeSize")}')

__all__ += ['check_ebs_block_device']

@inject(connection=AwsConnection)
async def check_images_destroyed(images, *, connection):
    '''
    Confirm that none of *images* (:class:`AwsImage` or image ids) still exists.
    An image that AWS reports as ``deregistered`` counts as destroyed.
    '''
    def callback(image_id):
        try:
            r = connection.client.describe_images(ImageIds=[image_id])
        except ClientError as e:
            if error_code(e).startswith('InvalidAMIID'):
                logger.debug('%s not found, passing', image_id)
                return None
            raise
        return r['Images']

    for image in images:
        image_id = image.id if isinstance(image, AwsImage) else image
        if not image_id:
            continue
        logger.debug('Checking %s is destroyed', image_id)
        found = await run_in_executor(callback, image_id)
        for description in found or []:
            if description['State'] != 'deregistered':
                raise CheckFailed(
                    f'AMI {description["ImageId"]} still exists in the state: {description["State"]}.')

__all__ += ['check_images_destroyed']

def _attributes(resource):
    if isinstance(resource, AwsImage):
        return resource.image_attributes()
    return resource

def check_attribute(resource, attribute:str, expected):
    '''
    Check that *attribute* of *resource* equals *expected*.
    *resource* is an :class:`AwsImage` or a dictionary of attributes.
    '''
    attributes = _attributes(resource)
    if attribute not in attributes:
        raise CheckFailed(f'{resource}: no attribute {attribute}')
    if attributes[attribute] != expected:
        raise CheckFailed(
            f'{resource}: attribute {attribute} expected {expected!r}, got {attributes[attribute]!r}')

__all__ += ['check_attribute']

def check_attribute_matches(resource, attribute:str, pattern):
    '''
    Check that *attribute* of *resource* matches the regular expression *pattern*.
    '''
    attributes = _attributes(resource)
    value = attributes.get(attribute)
    if value is None:
        raise CheckFailed(f'{resource}: no attribute {attribute}')
    if not re.search(pattern, str(value)):
        raise CheckFailed(
            f'{resource}: attribute {attribute} of {value!r} does not match {pattern}')

__all__ += ['check_attribute_matches']

def compare_attributes(expected:dict, actual:dict, ignore=())-> list[str]:
    '''
    Return the keys whose values differ between *expected* and *actual*, skipping keys in *ignore*.
    '''
    differences = []
    for k in sorted(set(expected) | set(actual)):
        if k in ignore:
            continue
        if expected.get(k) != actual.get(k):
            differences.append(k)
    return differences

__all__ += ['compare_attributes']

async def check_import_state(image:AwsImage, ignore=()):
    '''
    Look *image* up again by id as a read only resource and check that
    the attributes match those of *image*, ignoring keys in *ignore*.
    '''
    if not image.id:
        raise CheckFailed(f'{image} has no id to import')
    imported = await image.ainjector(AwsImage.from_id, image.id, image.name)
    await imported.async_become_ready()
    original = image.image_attributes()
    result = imported.image_attributes()
    differences = compare_attributes(original, result, ignore)
    if differences:
        details = ', '.join(f'{k}: {original.get(k)!r} != {result.get(k)!r}' for k in differences)
        raise CheckFailed(f'Imported {image} differs: {details}')
    return imported

__all__ += ['check_import_state']
