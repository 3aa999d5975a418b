# Copyright (C) 2022, 2023, 2024, Hadron Industries, Inc.
# Carthage is free software; you can redistribute it and/or modify
# it under the terms of the GNU Lesser General Public License version 3
# as published by the Free Software Foundation. It is distributed
# WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the file
# LICENSE for details.

from pathlib import Path
import asyncio
import os
import typing

from carthage import *
from carthage.config import ConfigLayout
from carthage.dependency_injection import *
from carthage.modeling import propagate_key, CarthageLayout
import boto3
from botocore.exceptions import ClientError

__all__ = ['AwsConnection', 'AwsManaged']

#: Resource types inventoried by :class:`AwsConnection`
managed_resource_types = ('image', 'snapshot', 'volume')

async def run_in_executor(func, *args):
    return await asyncio.get_event_loop().run_in_executor(None, func, *args)

def error_code(e:ClientError)-> str:
    '''The AWS error code carried by a :class:`ClientError`, or an empty string.'''
    return e.response.get('Error', {}).get('Code', '')

__all__ += ['error_code']

@inject_autokwargs(config_layout=ConfigLayout)
class AwsConnection(AsyncInjectable):

    '''
    A boto3 session and EC2 client configured from the *aws* config section.

    When ready, :attr:`names_by_resource_type` maps each of
    :data:`managed_resource_types` to a dictionary from ``Name`` tag to
    the set of resource ids carrying it.  Only resources matching the
    tag filters of registered :class:`AwsTagProvider`s are included.
    '''

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.config = self.config_layout.aws
        self.connection = None
        self.region = None
        self.client = None
        self.names_by_resource_type = {}

    async def tag_filters(self):
        providers = await self.ainjector.filter_instantiate_async(AwsTagProvider, ['name'])
        tags: dict[str, set[str]] = {}
        for _, provider in providers:
            for k, values in provider.tag_filter().items():
                tags.setdefault(k, set()).update(values)
        return [{'Name': 'tag:'+k, 'Values': sorted(values)} for k, values in tags.items()]

    async def inventory(self):
        self.connection = boto3.Session(
            aws_access_key_id=self.config.access_key_id,
            aws_secret_access_key=self.config.secret_access_key,
            profile_name=self.config.profile if self.config.profile else None
        )
        self.region = self.config.region
        self.client = self.connection.client('ec2', region_name=self.region)
        tag_filters = await self.tag_filters()
        self.names_by_resource_type = await run_in_executor(self._inventory, tag_filters)

    def _inventory(self, tag_filters):
        # Executor context
        paginator = self.client.get_paginator('describe_tags')
        filters = [
            {'Name': 'key', 'Values': ['Name']},
            {'Name': 'resource-type', 'Values': list(managed_resource_types)},
            *tag_filters]
        result = {}
        for page in paginator.paginate(Filters=filters):
            for tag in page['Tags']:
                by_name = result.setdefault(tag['ResourceType'], {})
                by_name.setdefault(tag['Value'], set()).add(tag['ResourceId'])
        return result

    async def async_ready(self):
        await self.inventory()
        return await super().async_ready()

    def invalid_ec2_resource(self, resource_type, resource_id, *, name=None):
        '''
        Forget *resource_id*, which no longer exists, and remove its tags.
        Run in executor context.
        '''
        if name:
            self.names_by_resource_type.get(resource_type, {}).get(name, set()).discard(resource_id)
        try:
            self.client.delete_tags(Resources=[resource_id])
        except ClientError as e:
            logger.debug('Unable to untag %s: %s', resource_id, e)


@inject_autokwargs(config_layout=ConfigLayout,
                   connection=InjectionKey(AwsConnection, _ready=True),
                   readonly = InjectionKey("aws_readonly", _optional=NotPresent),
                   id=InjectionKey("aws_id", _optional=NotPresent),
                   )
class AwsManaged(SetupTaskMixin, AsyncInjectable):

    '''
    Base for an EC2 resource.  Becoming ready finds the resource by
    :attr:`id` or :attr:`name`; if it is not found and the object is
    not :attr:`readonly`, it is created.  Subclasses set
    :attr:`resource_type` and :attr:`resource_factory_method` and
    implement :meth:`do_create`.  The boto3 resource is stored in
    :attr:`mob`.
    '''

    name = None
    id = None
    readonly = None
    resource_type: typing.ClassVar[str]
    resource_factory_method: typing.ClassVar[str]

    def __init__(self, *, name=None, **kwargs):
        if name:
            self.name = name
        super().__init__(**kwargs)
        if self.readonly is None: # pylint: disable=access-member-before-definition
            self.readonly = bool(self.id)
        self.mob = None

    @memoproperty
    def service_resource(self):
        return self.connection.connection.resource('ec2', region_name=self.connection.region)

    def resource_tags(self):
        '''A TagSpecifications list for creating this resource: a Name
        tag if we have a name plus the tags of every
        :class:`AwsTagProvider` in our injector.
        '''
        tags = []
        if self.name:
            tags.append({"Key":"Name", "Value":self.name})
        for _, provider in self.injector.filter_instantiate(AwsTagProvider, ['name']):
            for k, v in provider.resource_tags(self).items():
                tags.append({'Key': k, 'Value': v})
        return [{"ResourceType": self.resource_type, "Tags": tags}]

    def find_from_id(self):
        #called in executor context; create a mob from id
        assert self.id
        self.mob = getattr(self.service_resource, self.resource_factory_method)(self.id)
        try:
            self.mob.load()
        except ClientError as e:
            logger.warning('Failed to load %s', self, exc_info=e)
            self.mob = None
            if not self.readonly:
                self.connection.invalid_ec2_resource(self.resource_type, self.id, name=self.name)
        return self.mob

    #pylint: disable =redefined-builtin
    @classmethod
    @inject(injector=Injector)
    def from_id(cls, id, name, *, injector):
        '''A not-ready, readonly instance of *cls* for an existing resource.
        *name* may be ``None``.
        '''
        with instantiation_not_ready():
            return injector(cls, id=id, name=name, readonly=True)

    async def find(self):
        '''
        Find ourself from a name or id
        '''
        if self.id:
            return await run_in_executor(self.find_from_id)
        if self.name:
            for resource_id in await self.possible_ids_for_name():
                self.id = resource_id
                await run_in_executor(self.find_from_id)
                if self.mob:
                    return
            self.id = None

    async def possible_ids_for_name(self):
        names = self.connection.names_by_resource_type.get(self.resource_type, {})
        return list(names.get(self.name, ()))

    async def resolve_reference(self, reference):
        '''
        Turn *reference* into a ready :class:`AwsManaged` or an id string.
        *reference* may be an id, an :class:`InjectionKey` looked up in our injector, or an :class:`AwsManaged`.
        '''
        if isinstance(reference, InjectionKey):
            reference = await self.ainjector.get_instance_async(reference)
        if isinstance(reference, AsyncInjectable):
            await reference.async_become_ready()
        return reference

    def __repr__(self):
        return f'<{self.__class__.__name__} ({self.name or self.id}) at 0x{id(self):0x}>'

    def __str__(self):
        return f'{self.resource_type}:{self.name or self.id or ""}'

    @setup_task("construct", order=700)
    async def find_or_create(self): #type: ignore
        if self.mob:
            return
        # May be called directly without check_completed having run
        await self.find()
        if self.mob:
            await self._found()
            return

        if not self.name:
            raise RuntimeError(f'unable to create AWS resource for {self} without a name')
        if self.readonly:
            raise LookupError(f'unable to find AWS resource for {self} and creation was not enabled')

        await self.ainjector(self.pre_create_hook)
        await run_in_executor(self.do_create)
        if not (self.mob or self.id):
            raise RuntimeError(f'do_create failed to create AWS resource for {self}')
        if not self.mob:
            await self.find()
        elif not self.id:
            self.id = self.mob.id
        logger.info('Created %s (%s)', self, self.id)
        await self.ainjector(self.post_create_hook)
        await self._found()
        return self.mob

    @find_or_create.check_completed()
    # pylint: disable=function-redefined
    async def find_or_create(self):
        await self.find()
        if self.mob:
            await self._found()
            return True
        return False

    async def _found(self):
        if not self.readonly:
            await self.ainjector(self.read_write_hook)
        await self.ainjector(self.post_find_hook)

    def _gfi(self, key, default="error"):
        '''
        get_from_injector.  Used to look up some configuration in the model or its enclosing injectors.
        '''
        res = self.injector.get_instance(InjectionKey(key, _optional=default != "error"))
        if res is None and default != "error":
            res = default
        return res

    def do_create(self):
        '''
        Run in executor context.  Create the resource, setting :attr:`mob` or :attr:`id`.
        '''
        raise NotImplementedError

    async def pre_create_hook(self):
        '''Async preparation such as resolving references, before :meth:`do_create`.'''

    async def post_create_hook(self):
        '''Async work after creation, typically waiting for the resource to become usable.'''

    async def post_find_hook(self):
        '''Called whenever the resource is found or created.  Must not modify a readonly resource.'''

    async def read_write_hook(self):
        '''Reconcile the resource with the model; only called when not readonly.'''

    @memoproperty
    def stamp_path(self):
        p = Path(self.config_layout.state_dir).joinpath(
            "aws_stamps", self.resource_type, str(self.id)+".stamps")
        os.makedirs(p, exist_ok=True)
        return p

    async def dynamic_dependencies(self):
        '''Deployables that must exist before this resource and be destroyed after it.'''
        return []

    @classmethod
    def default_class_injection_key(cls):
        if cls.name is None:
            return super().default_class_injection_key()
        return InjectionKey(AwsManaged, resource_type=cls.resource_type, name=cls.name)

    def default_instance_injection_key(self):
        if self.name is None:
            return super().default_instance_injection_key()
        return InjectionKey(AwsManaged, resource_type=self.resource_type, name=self.name)

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        # Propagate named resources up to the layout so deployment finds them
        if cls.name is not None and getattr(cls, 'resource_type', None):
            propagate_key(cls.default_class_injection_key(), cls)


async def wait_for_state_change(obj, get_state_func, desired_state:str, wait_states: list[str], timeout=300):
    '''
    Reload *obj* with :meth:`~AwsManaged.find_from_id` every five
    seconds until *get_state_func(obj)* returns *desired_state*.
    Any state outside *wait_states*, or still waiting after *timeout*
    seconds, raises :exc:`RuntimeError`.
    '''
    state = get_state_func(obj)
    logged = False
    while state != desired_state:
        if state not in wait_states:
            raise RuntimeError(f'Unexpected state for {obj}: {state}')
        if timeout <= 0:
            raise RuntimeError(f'{obj}: {state=} is not desired state {desired_state}')
        if not logged:
            logger.info('Waiting for %s to enter %s state', obj, desired_state)
            logged=True
        await asyncio.sleep(5)
        timeout -= 5
        await run_in_executor(obj.find_from_id)
        state = get_state_func(obj)

__all__ += ['wait_for_state_change']

class AwsDeployableFinder(DeployableFinder):
    '''
    Find every :class:`AwsManaged` for :mod:`carthage.deployment`.
    '''

    name = 'aws'

    async def find(self, ainjector):
        results = await ainjector.filter_instantiate_async(
            None,
            lambda k:
                isinstance(k.target, type) and issubclass(k.target, AwsManaged),
            ready=False,
            stop_at=ainjector
        )
        return [x[1] for x in results]

class AwsTagProvider(Injectable):

    '''
    Contributes tags to resources when they are created
    (:meth:`resource_tags`) and filters which tagged resources
    :class:`AwsConnection` considers ours (:meth:`tag_filter`).
    Register subclasses with ``injector.add_provider(SomeTagProvider)``.
    '''

    # A name under which the tag provider is registered.
    name: typing.ClassVar[str]

    @classmethod
    def default_class_injection_key(cls):
        return InjectionKey(AwsTagProvider, name=cls.name)

    def tag_filter(self)-> dict[str, list[str]]:
        '''Map of tag key to acceptable values.'''
        return {}

    # pylint: disable=unused-argument
    def resource_tags(self, resource:AwsManaged)-> dict[str,str]:
        return {}

__all__ += ['AwsTagProvider']

@inject_autokwargs(injector=Injector)
class LayoutTagProvider(AwsTagProvider):

    '''Tags resources with ``carthage:layout`` set to the *layout_name*
    of their :class:`~carthage.modeling.CarthageLayout`.

    By default resources with a matching name are adopted even if they
    carry no layout tag.  To only consider resources tagged with the
    current layout::

        base_injector.add_provider(carthage_ami_layout_adopt_resources, False)

    '''

    name = 'layout'

    def resource_tags(self, resource):
        try:
            layout = resource.injector.get_instance(CarthageLayout)
        except (KeyError, AsyncRequired):
            return {}
        if not layout.layout_name:
            return {}
        return {'carthage:layout': layout.layout_name}

    def tag_filter(self):
        adopt = self.injector.get_instance(InjectionKey(carthage_ami_layout_adopt_resources, _optional=True))
        if adopt is None or adopt:
            return {}
        try:
            layout = self.injector.get_instance(InjectionKey(CarthageLayout, _ready=False))
        except (KeyError, AsyncRequired):
            return {}
        if not layout.layout_name:
            return {}
        return {'carthage:layout': [layout.layout_name]}

__all__ += ['LayoutTagProvider']

#: Whether resources with a layout's names but without its
#``carthage:layout`` tag are adopted.  Defaults to true.
carthage_ami_layout_adopt_resources = InjectionKey('carthage_ami.adopt_resources')

__all__ += ['carthage_ami_layout_adopt_resources']
