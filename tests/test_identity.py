import pytest

from runsync.identity import IdentityError, StaticTokenVerifier, extract_bearer_token


@pytest.mark.parametrize(
    "header, expected",
    [
        ("Bearer abc", "abc"),
        ("  bearer   xyz  ", "xyz"),
        ("Bearer ", None),
        ("Basic abc", None),
        (None, None),
    ],
)
def test_extract_bearer_token(header, expected):
    assert extract_bearer_token(header) == expected


def test_static_verifier():
    verifier = StaticTokenVerifier({"t-1": "user-1"})

    assert verifier.verify("t-1") == "user-1"
    with pytest.raises(IdentityError) as excinfo:
        verifier.verify("t-2")
    assert excinfo.value.status == 401
