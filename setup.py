import setuptools

VERSION = '0.1.0'

setup_params = dict(
    name='performed',
    version=VERSION,
    author='Kenneth VanderLinde',
    author_email='kwvanderlinde@gmail.com',
    url='https://github.com/kwvanderlinde/performed',
    keywords='requests retry throttle cache oauth',
    packages=setuptools.find_packages(exclude=['tests', 'tests.*']),
    package_dir={'performed': 'performed'},
    include_package_data=True,
    description='Declarative HTTP requests with retries, throttling, caching and OAuth, built on requests',
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
    install_requires=['requests>=2.25', 'urllib3>=1.26', 'tenacity>=8.0', 'PyJWT[crypto]>=2.0'],
    extras_require={
        'dev': [
            'mockito>=1.2',
            'pytest>=7.0',
            'pytest-cov>=4.0',
            'ddt>=1.4',
        ],
    },
    entry_points={},
    python_requires='>=3.8',
    classifiers=[
        'Development Status :: 2 - Pre-Alpha',
        'Environment :: Web Environment',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: BSD License',
        'Natural Language :: English',
        'Operating System :: OS Independent',

        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3 :: Only',
    ],
)


if __name__ == '__main__':
    setuptools.setup(**setup_params)
