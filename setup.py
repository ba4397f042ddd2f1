from setuptools import setup

setup(
    name='env-lifecycle-scripts',
    version='1.0.0',
    description='Environment lifecycle scripts: CloudFormation stack deployment, '
                'environment init/delete, and the environment controller custom resource',
    py_modules=[
        'app_deployer',
        'config_parser',
        'config_store',
        'env_controller',
        'env_delete_stage',
        'env_init_stage',
        'iam_roles',
        'progress',
        'resource_groups',
        'stack_config',
        'stack_deployer',
        'stack_gateway',
        'steps',
        'validation',
    ],
    data_files=[('', ['env-config.schema.json'])],
    python_requires='>=3.9',
    install_requires=[
        'boto3>=1.28.0',
        'PyYAML>=6.0',
        'jsonschema>=4.19.0',
        'requests>=2.31.0',
    ],
    extras_require={
        'dev': [
            'pytest>=7.4.0',
            'hypothesis>=6.88.0',
            'moto[ssm]>=5.0.0',
            'mypy>=1.5.0',
            'types-PyYAML>=6.0.0',
            'types-requests>=2.31.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'env-init=env_init_stage:main',
            'env-delete=env_delete_stage:main',
        ],
    },
)
