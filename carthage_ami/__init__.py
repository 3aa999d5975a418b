# Copyright (C) 2022, 2024, Hadron Industries, Inc.
# Carthage is free software; you can redistribute it and/or modify
# it under the terms of the GNU Lesser General Public License version 3
# as published by the Free Software Foundation. It is distributed
# WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the file
# LICENSE for details.

from carthage.dependency_injection import *
from carthage.config import ConfigSchema
from carthage.config.types import ConfigString

__all__ = []

from .connection import (
    AwsConnection,
    AwsManaged,
    AwsTagProvider,
    LayoutTagProvider,
    carthage_ami_layout_adopt_resources,
)

__all__ += [
    "AwsConnection",
    "AwsManaged",
    "AwsTagProvider",
    "LayoutTagProvider",
    "carthage_ami_layout_adopt_resources",
]

from .ebs import AwsVolume, AwsSnapshot, availability_zone_provider

__all__ += ["AwsVolume", "AwsSnapshot", "availability_zone_provider"]

from .image import (
    AwsImage,
    EbsBlockDevice,
    EphemeralBlockDevice,
    attributes_from_description,
)

__all__ += [
    "AwsImage",
    "EbsBlockDevice",
    "EphemeralBlockDevice",
    "attributes_from_description",
]

from .checks import (
    CheckFailed,
    wait_for_image,
    image_block_device,
    check_ebs_block_device,
    check_images_destroyed,
    check_attribute,
    check_attribute_matches,
    check_import_state,
    random_name,
)

__all__ += [
    "CheckFailed",
    "wait_for_image",
    "image_block_device",
    "check_ebs_block_device",
    "check_images_destroyed",
    "check_attribute",
    "check_attribute_matches",
    "check_import_state",
    "random_name",
]


class AwsConfig(ConfigSchema, prefix="aws"):
    #:aws_access_key_id
    access_key_id: ConfigString

    #:aws_secret_access_key
    secret_access_key: ConfigString

    #: Profile name from ~/.aws/credentials
    profile: ConfigString
    #:AWS region
    region: ConfigString


@inject(injector=Injector)
def enable_new_aws_connection(injector):
    injector.add_provider(InjectionKey(AwsConnection), AwsConnection)


@inject(injector=Injector)
def carthage_plugin(injector):
    # avoid circular imports
    # pylint: disable=import-outside-toplevel
    from . import connection

    injector.add_provider(connection.AwsDeployableFinder)
    injector.add_provider(LayoutTagProvider)
    injector(enable_new_aws_connection)
