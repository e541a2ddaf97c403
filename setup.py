from setuptools import setup


setup(
    name='quartermaster',
    version='0.0.1',
    package_dir={
        'quartermaster': 'quartermaster'
    },
    packages=[
        'quartermaster',
        'quartermaster.scripts',
        'quartermaster.subsystems'
    ],
    entry_points={
        'console_scripts': [
            'quartermaster-reservation = quartermaster.scripts.reservation:cmd_root',
            'quartermaster-init-db = quartermaster.scripts.init_db:cmd_root'
        ]
    },

    python_requires='>=3.9',

    install_requires=[
        'click',
        'gluetool',
        'prometheus-client',
        'psycopg2-binary',
        'ruamel.yaml',
        'sentry-sdk',
        'sqlalchemy>=2.0',
        'stackprinter',
        'typing-extensions'
    ],

    extras_require={
        'test': [
            'jinja2',
            'pytest',
            'sqlalchemy-utils'
        ]
    },

    author='tft',
    author_email='',
    description='Lifecycle controller of reservation worker processes',
    license='Apache-2.0',
    keywords='',
    url='',
    long_description=''
)
