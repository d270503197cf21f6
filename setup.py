from setuptools import setup, find_packages
from pathlib import Path

package_name = 'fleet-release-operator'
description = (
    'A Kubernetes Operator that installs chart releases onto a fleet of '
    'clusters and reports on their capacity.'
)
author = 'fleet-release-operator developers'
author_email = 'fleet-release-operator@users.noreply.github.com'
license = 'MIT'
url = 'https://github.com/fleet-release/fleet-release-operator'
version = '0.1.0'
pypi_classifiers = [
    'Development Status :: 3 - Alpha',
    'License :: OSI Approved :: MIT License',
    'Programming Language :: Python :: 3.10'
]
keywords = ['kubernetes', 'operator', 'helm']
readme = Path(__file__).parent / 'README.rst'

# Core dependencies
install_requires = [
    'kopf>=1.37',
    'kubernetes>=29.0.0,<37',
    'urllib3>=1.26',
    'structlog>=24.1.0',
    'PyYAML>=6.0',
    'httpx>=0.27',
    'packaging>=23.0',
]

# Test dependencies
tests_require = [
    'pytest>=7.4',
]
tests_require += install_requires

# Optional dependencies (like for dev)
extras_require = {
    'test': tests_require,
    # For development environments
    'dev': tests_require,
}

setup(
    name=package_name,
    version=version,
    description=description,
    long_description=readme.read_text(),
    long_description_content_type='text/x-rst',
    author=author,
    author_email=author_email,
    url=url,
    license=license,
    classifiers=pypi_classifiers,
    keywords=keywords,
    package_dir={'': 'src'},
    packages=find_packages('src', exclude=['docs', 'tests']),
    python_requires='>=3.10',
    install_requires=install_requires,
    tests_require=tests_require,
    extras_require=extras_require,
    include_package_data=True
)
