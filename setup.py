from setuptools import setup, find_packages

setup(
    name="laser_odometry",
    version="0.1.0",
    description="Laser Odometry: continuous-time lidar odometry for rotating multi-ring lidars",
    packages=find_packages(where='src'),
    package_dir={'': 'src'},
    entry_points={
        'console_scripts': [
            'laser_odometry = laser_odometry.cli:main',
        ],
    },
    install_requires=[
        "numpy<2",
        "scipy",
        "threadpoolctl",
    ],
    extras_require={
        "dev": [
            "pytest",
            "flake8",
            "black",
        ]
    }
)
