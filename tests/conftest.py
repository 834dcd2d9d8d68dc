"""Shared fixtures for the GrindLens tests."""

import textwrap

import pytest

from grindlens import CallgrindLoader, LoaderSettings, Part, ProfileData


def dump(text: str) -> bytes:
    """Dedent a literal profile dump and encode it."""
    return textwrap.dedent(text).lstrip("\n").encode("utf-8")


@pytest.fixture
def data():
    """Return an empty ProfileData session."""
    return ProfileData()


@pytest.fixture
def loader():
    """Return a loader with default settings."""
    return CallgrindLoader(LoaderSettings())


@pytest.fixture
def load(data, loader):
    """Import a literal dump as a new part and return the part."""
    def _load(text: str, name: str = "callgrind.out.test") -> Part:
        part = Part.from_bytes(dump(text), name=name)
        return loader.load_part(data, part)
    return _load


@pytest.fixture
def scenario_dump():
    """The call/self-cost scenario: main calls work, cfn= after the call line."""
    return """
        events: Cyc
        fn=(1) main
        10 100
        calls=2
        20 200
        cfn=(2) work
        5 50
    """
