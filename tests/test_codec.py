import base64

import pytest

from voice_lesson.codec import decode_audio, encode_audio
from voice_lesson.errors import InvalidBackendResponse

CHUNK = 1000


@pytest.mark.parametrize("size", [0, 1, 3 * CHUNK])
def test_round_trip_reproduces_bytes(size):
    data = bytes(i % 256 for i in range(size))
    assert decode_audio(encode_audio(data)) == data


def test_encode_is_plain_padded_base64():
    encoded = encode_audio(b"\x00\xff\x10")
    assert encoded == base64.b64encode(b"\x00\xff\x10").decode("ascii")
    assert not encoded.startswith("data:")


def test_decode_rejects_invalid_payload():
    with pytest.raises(InvalidBackendResponse):
        decode_audio("not*base64!")
