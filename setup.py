from setuptools import setup, find_packages

setup(
    name='research_relay',
    version='0.1.0',
    packages=find_packages(exclude=['tests', 'tests.*']),
    include_package_data=True,
    install_requires=[
        'fastapi>=0.110.0',
        'uvicorn>=0.27.0',
        'pydantic>=2.5.0',
        'pydantic-settings>=2.1.0',
        'python-dotenv>=1.0.0',
        'httpx>=0.26.0',
        'anthropic>=0.25.0',
        'redis>=5.0.0',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.23.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'research-relay=research_relay.main:run',
        ],
    },
    description='A FastAPI service that routes research requests between LLM providers with rate limiting and pollable research jobs.',
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'License :: OSI Approved :: MIT License',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.9',
)
