from setuptools import setup

setup(
    name='kwplib',
    version='1.0.0',
    description='A library for KWP2000 diagnostics over K-line',
    license='GPL-3',
    packages=['kwplib'],
    python_requires='>=3.7',
    entry_points={
        'console_scripts': ['kwplib=kwplib.__main__:Main'],
    },
    install_requires=['pylibftdi','pydispatcher','pyserial'],
    extras_require={
        'test': ['pytest'],
    },
)
