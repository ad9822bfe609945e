from setuptools import setup, find_packages

with open("README.md", "r", encoding='utf-8') as fh:
    long_description = fh.read()

setup(
    name="python-ldap-table",
    version="1.0.0",
    packages=find_packages(),
    include_package_data=True,
    package_data={'ldap_table': ["py.typed"], 'ldap_table.test': ["*.json"]},
    python_requires=">=3.10",
    install_requires=[
        'python-ldap>=3.3',
        'case-insensitive-dictionary',
        'ldap-filter'
    ],
    extras_require={
        'test': ['pytest'],
    },
    description="Resolve mail aliases and virtual recipients from an LDAP directory.",
    long_description=long_description,
    long_description_content_type="text/markdown",
    keywords=['ldap', 'mail', 'alias'],
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'Intended Audience :: System Administrators',
        'License :: OSI Approved :: BSD License',
        'Operating System :: OS Independent',
        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: Communications :: Email :: Mail Transport Agents',
        'Topic :: System :: Systems Administration :: Authentication/Directory :: LDAP',
    ],
)
