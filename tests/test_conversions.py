import pytest

from controller.actuation import ActuationCommand
from controller.conversions import (
    ADC_BITS_MAX,
    adc_bits_to_normalized,
    decode_sample,
    encode_sample,
    normalized_to_adc_bits,
    read_command,
    write_command,
)


def test_adc_scale_endpoints():
    assert adc_bits_to_normalized(0) == 0.0
    assert adc_bits_to_normalized(ADC_BITS_MAX) == 1.0
    assert adc_bits_to_normalized(32768) == pytest.approx(32768 / 65535)


def test_adc_bits_are_clamped():
    assert adc_bits_to_normalized(-5) == 0.0
    assert adc_bits_to_normalized(70000) == 1.0
    assert normalized_to_adc_bits(1.7) == ADC_BITS_MAX
    assert normalized_to_adc_bits(-0.1) == 0


def test_decode_little_endian_word_at_offset():
    image = bytearray(b"\x00\x00\xff\xff\x00\x00")
    assert decode_sample(image, 2) == 1.0
    image[2:4] = (0x1234).to_bytes(2, "little")
    assert decode_sample(image, 2) == pytest.approx(0x1234 / 65535)


@pytest.mark.parametrize("image, offset", [
    (None, 0),
    (bytearray(), 0),
    (bytearray(3), 2),
    (bytearray(4), -1),
])
def test_decode_reports_absence(image, offset):
    assert decode_sample(image, offset) is None


def test_encode_matches_decode_resolution():
    image = bytearray(4)
    encode_sample(image, 2, 0.5)
    assert decode_sample(image, 2) == pytest.approx(0.5, abs=1.0 / ADC_BITS_MAX)


def test_write_command_into_first_output_byte():
    out = bytearray(b"\xff\x07")
    assert write_command(out, ActuationCommand.EXTEND)
    assert out == bytearray(b"\x02\x07")
    assert read_command(out) is ActuationCommand.EXTEND


def test_write_command_without_output_image():
    assert not write_command(None, ActuationCommand.EXTEND)
    assert not write_command(bytearray(), ActuationCommand.EXTEND)


def test_read_command_unknown_pattern_is_neutral():
    assert read_command(bytearray(b"\x03")) is ActuationCommand.NEUTRAL
    assert read_command(b"") is ActuationCommand.NEUTRAL
