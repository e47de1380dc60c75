"""
Tests declaring, validating and reading step parameters
"""

from datetime import timedelta
from enum import Enum

import pytest

from stepengine.low.core import ConfigurationError
from stepengine.steps.params import StepParameters, SupportedParameter, parse_timedelta, split_list


class Flavor(str, Enum):
    vanilla = "Vanilla"
    chocolate = "Chocolate"


supported = [
    SupportedParameter("Duration", timedelta, required=True),
    SupportedParameter("Iterations", int),
    SupportedParameter("Ratio", float),
    SupportedParameter("UseTipSession", bool),
    SupportedParameter("Flavor", Flavor),
    SupportedParameter("VmSize", str),
]


def test_parse_timedelta():
    assert parse_timedelta("00:30:00") == timedelta(minutes=30)
    assert parse_timedelta("1.02:00:05") == timedelta(days=1, hours=2, seconds=5)
    assert parse_timedelta("90") == timedelta(seconds=90)
    assert parse_timedelta(1.5) == timedelta(seconds=1.5)
    assert parse_timedelta(timedelta(hours=1)) == timedelta(hours=1)
    assert parse_timedelta("PT45M") == timedelta(minutes=45)
    with pytest.raises(ValueError):
        parse_timedelta("half an hour")
    with pytest.raises(ValueError):
        parse_timedelta(True)


def test_typed_access():
    parameters = StepParameters(
        {"duration": "00:10:00", "ITERATIONS": "3", "Ratio": 0.5, "UseTipSession": "False", "Flavor": "Chocolate"},
        supported,
    )
    parameters.validate()
    assert parameters.get("Duration") == timedelta(minutes=10)
    assert parameters.get("Iterations") == 3
    assert parameters.get("Ratio") == 0.5
    assert parameters.get("UseTipSession") is False
    assert parameters.get("Flavor") == Flavor.chocolate
    assert parameters.get("VmSize", "Standard_D2s_v3") == "Standard_D2s_v3"
    assert "VmSize" not in parameters
    assert "usetipsession" in parameters


def test_validation():
    with pytest.raises(ConfigurationError, match="Duration"):
        StepParameters({"Iterations": 1}, supported).validate()
    with pytest.raises(ConfigurationError, match="Duration"):
        StepParameters({"Duration": "  "}, supported).validate()
    with pytest.raises(ConfigurationError, match="Iterations"):
        StepParameters({"Duration": "00:01:00", "Iterations": "many"}, supported).validate()
    with pytest.raises(ConfigurationError, match="UseTipSession"):
        StepParameters({"Duration": "00:01:00", "UseTipSession": "maybe"}, supported).validate()
    with pytest.raises(ConfigurationError, match="Flavor"):
        StepParameters({"Duration": "00:01:00", "Flavor": "Strawberry"}, supported).validate()
    with pytest.raises(ConfigurationError, match="VmSize"):
        StepParameters({}, supported).require("VmSize")


def test_split_list():
    assert split_list("East US, West US;;North Europe ") == ["East US", "West US", "North Europe"]
    assert split_list("") == []


def test_lax_coercion():
    parameters = StepParameters(
        {"Duration": 600, "Iterations": 3.0, "UseTipSession": "true", "VmSize": 42, "Flavor": Flavor.vanilla},
        supported,
    )
    parameters.validate()
    assert parameters.get("Duration") == timedelta(minutes=10)
    assert parameters.get("Iterations") == 3
    assert parameters.get("UseTipSession") is True
    assert parameters.get("VmSize") == "42"
    assert parameters.get("Flavor") == Flavor.vanilla

    with pytest.raises(ConfigurationError, match="Iterations"):
        StepParameters({"Duration": 600, "Iterations": 2.5}, supported).validate()
