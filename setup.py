from setuptools import setup, find_packages

setup(
    name="agrinotify",
    version="0.1.0",
    packages=find_packages(include=["agrinotify", "agrinotify.*"]),
    python_requires=">=3.10",
    install_requires=[
        "fastapi",
        "uvicorn",
        "sqlalchemy>=2.0",
        "psycopg2-binary",
        "python-dotenv",
        "pydantic>=2",
        "pydantic-settings",
        "httpx",
        "firebase-admin",
        "prometheus-client",
        "prometheus-fastapi-instrumentator",
        "celery",
    ],
    extras_require={
        "test": ["pytest"],
    },
)
