from setuptools import find_packages, setup

setup(name='flywheel',
      version='1.0',
      include_package_data=True,
      package_data={
            'common': ['py.typed'],
            'flywheel': ['py.typed'],
      },
      install_requires=[
            'SQLAlchemy>=1.4',
            'sqlalchemy-utils',
            'grpcio',
            'grpcio-health-checking',
            'pyjwt',
            'pymysql',
            'requests',
            'pytz',
            'solders',
            'solana<0.40',
            'httpx',
            'python-dotenv',
      ],
      extras_require={
            'test': ['pytest'],
      },
      packages=find_packages('.', include=('common*', 'flywheel*')),
      py_modules=['serve'],
)
