"""
Property-based tests for environment configuration validation.

These tests verify universal properties that should hold across all valid
and invalid env-config.yaml files.
"""

import tempfile
from pathlib import Path

import pytest
import yaml
from hypothesis import given, settings, strategies as st
from jsonschema import ValidationError

from config_parser import ConfigParser, parse_config
from validation import ValidationError as InputValidationError


# Hypothesis strategies for generating test data

@st.composite
def valid_name(draw):
    """Generate an application or environment name."""
    first = draw(st.sampled_from('abcdefghijklmnopqrstuvwxyz'))
    rest = draw(st.text(min_size=0, max_size=19, alphabet='abcdefghijklmnopqrstuvwxyz0123456789-'))
    return first + rest


@st.composite
def valid_vpc_config(draw):
    """Generate an optional import or configure VPC block."""
    kind = draw(st.sampled_from(['none', 'import', 'configure']))
    if kind == 'import':
        subnet = st.text(min_size=4, max_size=17, alphabet='0123456789abcdef').map(lambda s: f"subnet-{s}")
        return {'import': {
            'id': draw(st.text(min_size=4, max_size=17, alphabet='0123456789abcdef').map(lambda s: f"vpc-{s}")),
            'public_subnets': draw(st.lists(subnet, max_size=3)),
            'private_subnets': draw(st.lists(subnet, max_size=3)),
        }}
    if kind == 'configure':
        octet = draw(st.integers(min_value=0, max_value=255))
        return {'configure': {
            'cidr': f"10.{octet}.0.0/16",
            'public_subnet_cidrs': [f"10.{octet}.0.0/24", f"10.{octet}.1.0/24"],
            'private_subnet_cidrs': [f"10.{octet}.2.0/24", f"10.{octet}.3.0/24"],
        }}
    return None


@st.composite
def valid_config(draw):
    """Generate a valid environment configuration."""
    env = {
        'name': draw(valid_name()),
        'template': draw(st.sampled_from(['env.yml', 'templates/environment.yml', 'out/env.cfn.yml'])),
    }
    if draw(st.booleans()):
        env['region'] = draw(st.sampled_from([
            'us-east-1', 'us-west-2', 'eu-west-1', 'ap-southeast-1', 'ca-central-1', 'us-gov-west-1'
        ]))
    if draw(st.booleans()):
        env['prod'] = draw(st.booleans())
    if draw(st.booleans()):
        env['tags'] = draw(st.dictionaries(
            st.text(min_size=1, max_size=10, alphabet='abcdefghijklmnopqrstuvwxyz'),
            st.text(max_size=10, alphabet='abcdefghijklmnopqrstuvwxyz0123456789'),
            max_size=3
        ))
    vpc = draw(valid_vpc_config())
    if vpc is not None:
        env['vpc'] = vpc
    return {
        'version': '1.0',
        'application': draw(valid_name()),
        'environment': env,
    }


@st.composite
def invalid_config(draw):
    """Generate an invalid configuration that should fail schema validation."""
    config = draw(valid_config())
    config_type = draw(st.sampled_from([
        'missing_version',
        'wrong_version',
        'missing_application',
        'missing_template',
        'invalid_name',
        'invalid_region',
        'invalid_vpc_id',
        'both_vpc_blocks',
        'unknown_field',
    ]))

    if config_type == 'missing_version':
        del config['version']
    elif config_type == 'wrong_version':
        config['version'] = '2.0'
    elif config_type == 'missing_application':
        del config['application']
    elif config_type == 'missing_template':
        del config['environment']['template']
    elif config_type == 'invalid_name':
        config['environment']['name'] = 'Test_Env'
    elif config_type == 'invalid_region':
        config['environment']['region'] = 'invalid-region-format'
    elif config_type == 'invalid_vpc_id':
        config['environment']['vpc'] = {'import': {'id': 'my-vpc'}}
    elif config_type == 'both_vpc_blocks':
        config['environment']['vpc'] = {
            'import': {'id': 'vpc-0abc'},
            'configure': {'cidr': '10.0.0.0/16'},
        }
    elif config_type == 'unknown_field':
        config['environment']['account'] = '123456789012'
    return config


def write_config(tmpdir, config_data):
    config_path = Path(tmpdir) / 'env-config.yaml'
    with open(config_path, 'w') as f:
        yaml.dump(config_data, f)
    return config_path


# Feature: env-lifecycle, Property 14: Configuration schema validation
@settings(max_examples=100)
@given(config_data=valid_config())
def test_property_14_valid_configs_pass_validation(config_data):
    """
    Property 14: Configuration schema validation

    For any valid configuration file, parsing succeeds and yields the same
    application, environment and VPC choices.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        config_path = write_config(tmpdir, config_data)

        config = parse_config(str(config_path))

        env = config_data['environment']
        assert config.app == config_data['application']
        assert config.name == env['name']
        assert config.region == env.get('region')
        assert config.prod == env.get('prod', False)
        assert config.tags == env.get('tags', {})
        assert config.template_path == str(Path(tmpdir) / env['template'])

        vpc = env.get('vpc') or {}
        assert (config.import_vpc is not None) == ('import' in vpc)
        assert (config.adjust_vpc is not None) == ('configure' in vpc)
        if 'import' in vpc:
            assert config.import_vpc.id == vpc['import']['id']
            assert config.import_vpc.public_subnet_ids == vpc['import']['public_subnets']
        if 'configure' in vpc:
            assert config.adjust_vpc.cidr == vpc['configure']['cidr']


# Feature: env-lifecycle, Property 14: Configuration schema validation (invalid)
@settings(max_examples=100)
@given(config_data=invalid_config())
def test_property_14_invalid_configs_fail_validation(config_data):
    """
    Property 14: Configuration schema validation (invalid)

    For any configuration violating the schema, parsing fails before anything
    else happens.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        config_path = write_config(tmpdir, config_data)

        with pytest.raises(ValidationError):
            parse_config(str(config_path))


def test_configure_block_defaults():
    with tempfile.TemporaryDirectory() as tmpdir:
        config_path = write_config(tmpdir, {
            'version': '1.0',
            'application': 'demo',
            'environment': {
                'name': 'test',
                'template': '/abs/env.yml',
                'vpc': {'configure': {'cidr': '10.1.0.0/16'}},
            },
        })

        config = parse_config(str(config_path))

    assert config.template_path == '/abs/env.yml'
    assert config.adjust_vpc.public_subnet_cidrs == ['10.0.0.0/24', '10.0.1.0/24']
    assert config.adjust_vpc.private_subnet_cidrs == ['10.0.2.0/24', '10.0.3.0/24']


def test_configure_block_with_bad_cidr_fails():
    with tempfile.TemporaryDirectory() as tmpdir:
        config_path = write_config(tmpdir, {
            'version': '1.0',
            'application': 'demo',
            'environment': {
                'name': 'test',
                'template': 'env.yml',
                'vpc': {'configure': {'cidr': '10.1.0.0'}},
            },
        })

        with pytest.raises(InputValidationError):
            parse_config(str(config_path))


def test_missing_config_file():
    with pytest.raises(FileNotFoundError):
        parse_config('/nonexistent/env-config.yaml')


def test_missing_schema_file():
    with pytest.raises(FileNotFoundError):
        ConfigParser(schema_path='/nonexistent/env-config.schema.json')


def test_read_template(tmp_path):
    template = tmp_path / 'env.yml'
    template.write_text('Resources: {}\n')
    config_path = write_config(tmp_path, {
        'version': '1.0',
        'application': 'demo',
        'environment': {'name': 'test', 'template': 'env.yml'},
    })

    config = parse_config(str(config_path))

    assert config.read_template() == 'Resources: {}\n'
