# Copyright (C) 2024, Hadron Industries, Inc.
# Carthage is free software; you can redistribute it and/or modify
# it under the terms of the GNU Lesser General Public License version 3
# as published by the Free Software Foundation. It is distributed
# WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the file
# LICENSE for details.

#pylint: disable=redefined-outer-name

import types

import boto3
import pytest
from botocore.exceptions import EndpointConnectionError
from botocore.stub import Stubber
from carthage.pytest import *

from carthage_ami import *

IMAGE_ID = 'ami-0123456789abcdef0'

def image_description(state='available', **kwargs):
    description = {
        'ImageId': IMAGE_ID,
        'Name': 'carthage-ami-test-image',
        'State': state,
        'Architecture': 'x86_64',
        'RootDeviceName': '/dev/sda1',
        'VirtualizationType': 'hvm',
        'EnaSupport': True,
        'BlockDeviceMappings': [
            {'DeviceName': '/dev/sda1',
             'Ebs': {
                 'SnapshotId': 'snap-0123456789abcdef0',
                 'VolumeSize': 20,
                 'VolumeType': 'standard',
                 'DeleteOnTermination': True,
                 'Encrypted': False,
             }},
            {'DeviceName': '/dev/sdb', 'VirtualName': 'ephemeral0'},
        ],
    }
    description.update(kwargs)
    return description

@pytest.fixture()
def stubbed_connection():
    client = boto3.client(
        'ec2', region_name='us-east-1',
        aws_access_key_id='testing', aws_secret_access_key='testing')
    with Stubber(client) as stubber:
        yield types.SimpleNamespace(client=client), stubber

@async_test
async def test_wait_for_image_found(stubbed_connection):
    connection, stubber = stubbed_connection
    stubber.add_response('describe_images', {'Images': [image_description()]},
                         {'ImageIds': [IMAGE_ID]})
    image = await wait_for_image(IMAGE_ID, connection=connection, delay=0)
    assert image['ImageId'] == IMAGE_ID
    stubber.assert_no_pending_responses()

@async_test
async def test_wait_for_image_retries_not_found(stubbed_connection):
    connection, stubber = stubbed_connection
    for _ in range(2):
        stubber.add_client_error('describe_images', service_error_code='InvalidAMIID.NotFound')
    stubber.add_response('describe_images', {'Images': [image_description()]})
    image = await wait_for_image(IMAGE_ID, connection=connection, delay=0)
    assert image['State'] == 'available'
    stubber.assert_no_pending_responses()

@async_test
async def test_wait_for_image_times_out(stubbed_connection):
    connection, stubber = stubbed_connection
    stubber.add_client_error('describe_images', service_error_code='InvalidAMIID.NotFound')
    with pytest.raises(CheckFailed, match='Unable to find AMI after retries'):
        await wait_for_image(IMAGE_ID, connection=connection, timeout=0, delay=0)

@async_test
async def test_wait_for_image_other_errors_are_fatal(stubbed_connection):
    connection, stubber = stubbed_connection
    stubber.add_client_error('describe_images', service_error_code='UnauthorizedOperation')
    # Only one response is queued; a retry would fail with a stubber error instead
    with pytest.raises(CheckFailed, match='UnauthorizedOperation'):
        await wait_for_image(IMAGE_ID, connection=connection, timeout=60, delay=0)


@async_test
async def test_wait_for_image_connection_errors_are_fatal():
    def describe_images(**kwargs):
        raise EndpointConnectionError(endpoint_url='https://ec2.us-east-1.amazonaws.com')
    connection = types.SimpleNamespace(client=types.SimpleNamespace(describe_images=describe_images))
    with pytest.raises(CheckFailed, match='Unable to find AMI after retries: Could not connect'):
        await wait_for_image(IMAGE_ID, connection=connection, delay=0)

@async_test
async def test_wait_for_image_empty_response(stubbed_connection):
    connection, stubber = stubbed_connection
    stubber.add_response('describe_images', {'Images': []})
    with pytest.raises(CheckFailed, match='AMI not found'):
        await wait_for_image(IMAGE_ID, connection=connection, delay=0)

@async_test
async def test_wait_for_image_requires_id(stubbed_connection):
    connection, _ = stubbed_connection
    with pytest.raises(CheckFailed, match='No AMI ID is set'):
        await wait_for_image('', connection=connection)

def test_image_block_device():
    mapping = image_block_device(image_description(), '/dev/sda1')
    assert mapping['Ebs']['VolumeSize'] == 20
    with pytest.raises(CheckFailed, match="block device doesn't exist: /dev/xvda"):
        image_block_device(image_description(), '/dev/xvda')

def test_ebs_block_device_matches():
    mapping = image_block_device(image_description(), '/dev/sda1')
    check_ebs_block_device(mapping, EbsBlockDevice(
        delete_on_termination=True,
        encrypted=False,
        iops=0,
        volume_size=20,
        volume_type='standard'))
    # Nothing set means nothing compared
    check_ebs_block_device(mapping, EbsBlockDevice())

@pytest.mark.parametrize('expected,message', [
    (EbsBlockDevice(volume_type='gp3'), 'Volume type mismatch. Expected: gp3 Got: standard'),
    (EbsBlockDevice(delete_on_termination=False), 'DeleteOnTermination mismatch. Expected: False Got: True'),
    (EbsBlockDevice(encrypted=True), 'Encrypted mismatch. Expected: True Got: False'),
    (EbsBlockDevice(iops=3000), 'IOPS mismatch. Expected: 3000 Got: None'),
    (EbsBlockDevice(volume_size=8), 'Volume Size mismatch. Expected: 8 Got: 20'),
])
def test_ebs_block_device_mismatch(expected, message):
    mapping = image_block_device(image_description(), '/dev/sda1')
    with pytest.raises(CheckFailed) as excinfo:
        check_ebs_block_device(mapping, expected)
    assert str(excinfo.value) == message

@async_test
async def test_images_destroyed(stubbed_connection):
    connection, stubber = stubbed_connection
    stubber.add_client_error('describe_images', service_error_code='InvalidAMIID.NotFound')
    stubber.add_response('describe_images', {'Images': []})
    stubber.add_response('describe_images', {'Images': [image_description(state='deregistered')]})
    await check_images_destroyed([IMAGE_ID, IMAGE_ID, IMAGE_ID], connection=connection)
    stubber.assert_no_pending_responses()

@async_test
async def test_images_still_exist(stubbed_connection):
    connection, stubber = stubbed_connection
    stubber.add_response('describe_images', {'Images': [image_description()]})
    with pytest.raises(CheckFailed, match=f'AMI {IMAGE_ID} still exists in the state: available.'):
        await check_images_destroyed([IMAGE_ID], connection=connection)

def test_check_attribute():
    attributes = attributes_from_description(image_description())
    check_attribute(attributes, 'ena_support', True)
    check_attribute_matches(attributes, 'root_snapshot_id', r'^snap-')
    with pytest.raises(CheckFailed):
        check_attribute(attributes, 'architecture', 'arm64')
    with pytest.raises(CheckFailed):
        check_attribute_matches(attributes, 'id', r'^snap-')
    with pytest.raises(CheckFailed):
        check_attribute(attributes, 'no_such_attribute', None)

def test_random_name():
    name = random_name()
    assert name.startswith('carthage-ami-test-')
    assert name != random_name()
