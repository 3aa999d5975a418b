pytest_plugins = ('carthage.pytest_plugin',)

import logging
import boto3
import pytest
from botocore.exceptions import BotoCoreError
from carthage import *
from carthage.config import ConfigLayout
from carthage.pytest import *

import carthage_ami

# The boto logging is way too verbose
logging.getLogger('boto3').setLevel(logging.WARNING)
logging.getLogger('botocore').setLevel(logging.WARNING)

def aws_precheck(config):
    '''Skip unless AWS credentials and a region are available.'''
    try:
        session = boto3.Session(
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            profile_name=config.profile if config.profile else None)
        credentials = session.get_credentials()
    except BotoCoreError as e:
        pytest.skip(f'AWS session unavailable: {e}')
    if credentials is None:
        pytest.skip('AWS credentials are not configured')
    if not (config.region or session.region_name):
        pytest.skip('AWS region is not configured')

@pytest.fixture()
def aws_ainjector(ainjector):
    injector = ainjector.injector.claim("AMI acceptance tests")
    aws_precheck(injector(ConfigLayout).aws)
    injector(carthage_ami.carthage_plugin)
    ainjector = injector(AsyncInjector)
    yield ainjector
    ainjector.loop.run_until_complete(shutdown_injector(injector))
