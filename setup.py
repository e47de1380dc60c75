import io
import re

from setuptools import find_packages, setup

__version__ = re.search(
    r'__version__\s*=\s*[\'"]([^\'"]*)[\'"]',
    io.open("src/stepengine/version.py", encoding="utf_8_sig").read(),
).group(1)


setup(
    name="stepengine-python",
    version=__version__,
    description="stepengine is a Python library for resumable, polling-driven experiment steps.",
    long_description="""stepengine is a Python library for resumable, polling-driven experiment steps: worker process lifecycles and cloud resource provisioning loops.""",
    author="",
    author_email="",
    package_dir={"": "src"},
    packages=find_packages("src"),
    python_requires=">=3.10",
    zip_safe=False,
    include_package_data=True,
    install_requires=[
        "pydantic>=2.6",
        "typing_extensions",
        "orjson",
        "psutil",
        "fire",
    ],
    extras_require={
        "test": ["pytest"],
    },
)
