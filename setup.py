from setuptools import setup, find_packages
from codecs import open
import os

__author__ = "The cvengine Development Team"
__email__ = "cvengine@example.org"

here = os.path.abspath(os.path.dirname(__file__))
package_name = 'cvengine'
package_description = ('Collective variables and grid functions with '
                       'analytic derivatives')

# Get the long description from the README file
with open(os.path.join(here, 'README.md'), encoding='utf-8') as fp:
    long_description = fp.read()

# Get version number from the VERSION file
with open(os.path.join(here, 'src', package_name, 'VERSION')) as fp:
    version = fp.read().strip()

setup(
    name=package_name,
    version=version,
    description=package_description,
    long_description=long_description,
    long_description_content_type='text/markdown',
    author=__author__,
    author_email=__email__,
    license='MPL',
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Science/Research',
        'Topic :: Scientific/Engineering :: Physics',
        'Topic :: Scientific/Engineering :: Chemistry',
        'License :: OSI Approved :: Mozilla Public License 2.0 (MPL 2.0)',
        'Programming Language :: Python :: 3'
    ],
    keywords=['molecular simulation', 'collective variables',
              'enhanced sampling'],
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    package_data={package_name: ['VERSION']},
    python_requires='>=3.8',
    install_requires=['numpy>=1.20.1'],
    extras_require={
        'torch': ['torch>=2.0', 'torch-scatter>=2.1'],
        'test': ['pytest>=7.0', 'torch>=2.0', 'torch-scatter>=2.1'],
    }
)
