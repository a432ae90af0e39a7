from setuptools import setup, find_packages

setup(
    name='archive3d',
    version='0.1.0',
    author='Virgil',
    author_email='virgil@example.com',
    description='Build, read and progressively load .a3d / .a3z archive containers for 3D scans',
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
    url='https://github.com/example/archive3d',
    packages=find_packages(include=['archive3d', 'archive3d.*']),
    install_requires=[
        'numpy>=1.20.0',
        'opencv-python>=4.5.0',
        'trimesh>=3.10.0',
        'httpx>=0.24.0',
        'pydantic>=2.0',
    ],
    extras_require={
        'dev': [
            'pytest>=7.0.0',
            'pytest-cov>=4.0.0',
            'pytest-asyncio>=0.21.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'archive3d=archive3d.cli:main',
        ],
    },
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'Intended Audience :: Science/Research',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'License :: Other/Proprietary License',
        'Operating System :: OS Independent',
        'Topic :: Scientific/Engineering :: Visualization',
        'Topic :: Multimedia :: Graphics :: 3D Modeling',
    ],
    python_requires='>=3.8',
    include_package_data=True,
    package_data={
        'archive3d': ['py.typed'],
    },
)
