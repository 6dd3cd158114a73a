from setuptools import setup, find_packages

with open('requirements.txt') as f:
    requirements = f.readlines()

with open('test-requirements.txt') as f:
    test_requirements = f.readlines()

setup(name='buildfarm-client',
      description='Build farm client synchronizing, building and testing branches',
      version='1.0.0',
      classifiers=[
          "Programming Language :: Python",
          "Programming Language :: Python :: 3",
          "Topic :: Software Development :: Build Tools"
      ],
      keywords='build farm continuous integration git cvs',
      author='FIXME',
      author_email='FIXME',
      license='MIT',
      packages=find_packages(exclude=['tests', 'tests.*']),
      include_package_data=True,
      zip_safe=False,
      python_requires='>=3.8',
      install_requires=requirements,
      tests_require=test_requirements,
      extras_require={'test': test_requirements},
      entry_points={
          'console_scripts': ['buildfarm = buildfarm_client.cli:main'],
      },
      data_files=[('etc/buildfarm-client', ['conf/config.py'])],
      )
