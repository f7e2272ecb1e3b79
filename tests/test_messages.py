from locations.rules.messages import MESSAGES, ErrorKind, describe


def test_every_kind_has_a_message():
    assert set(MESSAGES) == set(ErrorKind)


def test_describe_returns_catalog_text():
    assert describe(ErrorKind.WRONG_SEPARATOR).startswith("Separate time ranges with commas")
