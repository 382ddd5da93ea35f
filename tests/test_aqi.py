import math

import pytest

from wardaqi.aqi import AQI_UNAVAILABLE, aqi_category, prominent_index, prominent_pollutant, sub_index
from wardaqi.models import PollutantReading
from wardaqi.resolution import cigarettes_equivalent, coarse_estimate, resolve_aqi


@pytest.mark.parametrize("pollutant", ["pm2_5", "pm10", "no2"])
@pytest.mark.parametrize("concentration", [None, -0.1, -50, math.nan])
def test_sub_index_undefined_for_missing_or_negative(pollutant, concentration):
    assert sub_index(pollutant, concentration) is None


@pytest.mark.parametrize("concentration,expected", [
    (0, 0),
    (30, 50),
    (60, 100),
    (65, 117),
    (90, 200),
    (250, 400),
    (300, 450),
])
def test_pm25_breakpoints_and_extrapolation(concentration, expected):
    assert sub_index("pm2_5", concentration) == expected


def test_pm10_extrapolates_above_table():
    assert sub_index("pm10", 430) == 400
    assert sub_index("pm10", 500) == 470


def test_no2_above_table_is_zero():
    assert sub_index("no2", 180) == 200
    assert sub_index("no2", 200) == 0


def test_rounds_half_up():
    # 2 * 50 / 40 = 2.5
    assert sub_index("no2", 2) == 3


def test_unknown_pollutant_rejected():
    with pytest.raises(ValueError):
        sub_index("so2", 10)


def test_prominent_index_ignores_undefined_sub_indices():
    reading = PollutantReading(pm2_5=None, pm10=120.0, no2=-5.0)
    assert prominent_index(reading) == 113
    assert prominent_pollutant(reading) == "pm10"


def test_prominent_index_takes_maximum():
    reading = PollutantReading(pm2_5=65.0, pm10=80.0, no2=30.0)
    assert prominent_index(reading) == 117
    assert prominent_pollutant(reading) == "pm2_5"


def test_prominent_index_none_when_nothing_defined():
    assert prominent_index(PollutantReading()) is None
    assert prominent_index(PollutantReading(so2=12.0, o3=40.0)) is None
    assert prominent_pollutant(PollutantReading()) is None


@pytest.mark.parametrize("index,level", [
    (0, "Good"),
    (50, "Good"),
    (51, "Satisfactory"),
    (117, "Moderate"),
    (300, "Poor"),
    (400, "Very Poor"),
    (450, "Severe"),
    (AQI_UNAVAILABLE, "Unknown"),
    (None, "Unknown"),
])
def test_aqi_category(index, level):
    assert aqi_category(index).level == level


class TestResolveAqi:
    def test_live_feed_index_takes_precedence(self):
        assert resolve_aqi(180, PollutantReading(pm2_5=65.0)) == 180

    def test_computed_index_without_live_feed(self):
        assert resolve_aqi(None, PollutantReading(pm2_5=65.0)) == 117

    def test_coarse_estimate_when_no_breakpoint_pollutant(self):
        reading = PollutantReading(so2=12.4, o3=40.0)
        assert coarse_estimate(reading) == 12
        assert resolve_aqi(None, reading) == 12

    @pytest.mark.parametrize("so2, expected", [(12.5, 13), (13.5, 14), (0.5, 1)])
    def test_coarse_estimate_rounds_half_up(self, so2, expected):
        reading = PollutantReading(so2=so2)
        assert coarse_estimate(reading) == expected
        assert resolve_aqi(None, reading) == expected

    def test_unavailable_when_nothing_known(self):
        assert resolve_aqi(None, PollutantReading()) == AQI_UNAVAILABLE

    def test_negative_live_index_ignored(self):
        assert resolve_aqi(-1, PollutantReading(pm10=50.0)) == 50


@pytest.mark.parametrize("pm2_5,index,expected", [
    (65.0, 117, "3.0"),
    (22.0, 50, "1.0"),
    (None, 110, "5.0"),
    (None, AQI_UNAVAILABLE, "0.0"),
])
def test_cigarettes_equivalent(pm2_5, index, expected):
    assert cigarettes_equivalent(pm2_5, index) == expected
