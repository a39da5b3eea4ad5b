"""Tests for chunk parsing and the status line."""

import pytest

from esp32_spp_thermometer.spp_receiver import (
    RawText,
    TemperatureReading,
    TemperatureSample,
    parse_chunk,
)


def fixed_clock() -> int:
    return 1_700_000_000_123


def test_parse_valid_record():
    result = parse_chunk("23.5,3.3", clock=fixed_clock)

    assert isinstance(result, TemperatureReading)
    assert result.temperature == 23.5
    assert result.voltage == 3.3
    assert result.to_sample() == TemperatureSample(value=23.5, timestamp=1_700_000_000_123)


def test_sample_keeps_temperature_only():
    sample = parse_chunk("40.25,1.75", clock=fixed_clock).to_sample()

    assert sample.value == 40.25
    assert not hasattr(sample, "voltage")


@pytest.mark.parametrize(
    "chunk",
    ["  23.5,3.3\n", "23.5,3.3\r\n", "\t23.5,3.3   "],
)
def test_surrounding_whitespace_is_ignored(chunk):
    assert parse_chunk(chunk, clock=fixed_clock) == parse_chunk(
        "23.5,3.3", clock=fixed_clock
    )


def test_whitespace_around_comma_is_accepted():
    result = parse_chunk("23.5 , 3.3", clock=fixed_clock)

    assert isinstance(result, TemperatureReading)
    assert (result.temperature, result.voltage) == (23.5, 3.3)


@pytest.mark.parametrize(
    "chunk, expected",
    [
        ("23.5,3.3,extra", "23.5,3.3,extra"),
        ("abc,3.3", "abc,3.3"),
        ("23.5,volts", "23.5,volts"),
        ("23.5", "23.5"),
        ("25.0,", "25.0,"),
        ("  garbled \n", "garbled"),
        ("", ""),
        ("\r\n", ""),
        ("nan,3.30", "nan,3.30"),
        ("23.5,nan", "23.5,nan"),
        ("inf,3.30", "inf,3.30"),
        ("-Infinity,3.3", "-Infinity,3.3"),
        ("2_5.0,3.3", "2_5.0,3.3"),
    ],
)
def test_unparseable_chunks_fall_back_to_trimmed_text(chunk, expected):
    assert parse_chunk(chunk, clock=fixed_clock) == RawText(expected)


def test_concatenated_records_are_not_split():
    # One read may carry two records; no line framing is applied
    result = parse_chunk("25.0,3.0\n26.0,3.1\n", clock=fixed_clock)

    assert result == RawText("25.0,3.0\n26.0,3.1")


def test_partial_record_is_raw_text():
    assert parse_chunk("25.", clock=fixed_clock) == RawText("25.")


def test_format_status():
    reading = parse_chunk("26.1,3.1", clock=fixed_clock)

    assert reading.format_status() == "Temperature: 26.1°C | Voltage: 3.1 V"


def test_format_status_integer_values_show_decimal():
    reading = parse_chunk("25,3", clock=fixed_clock)

    assert reading.format_status() == "Temperature: 25.0°C | Voltage: 3.0 V"


def test_parse_csv_raises_on_field_count():
    with pytest.raises(ValueError, match="fields count: 3"):
        TemperatureReading.parse_csv("1,2,3")


def test_parse_csv_raises_on_non_numeric():
    with pytest.raises(ValueError):
        TemperatureReading.parse_csv("abc,3.3")


def test_parse_csv_defaults_timestamp_to_now():
    reading = TemperatureReading.parse_csv("20.0,3.0")

    assert reading.timestamp > 1_600_000_000_000


def test_sample_is_immutable():
    sample = TemperatureSample(value=1.0, timestamp=1)

    with pytest.raises(AttributeError):
        sample.value = 2.0  # type: ignore[misc]
