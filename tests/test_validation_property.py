"""
Tests for request validators.

Property: no sanitised sketch path ever climbs out of its base directory,
and resolution only ever returns files inside the project root.
"""

import os

import pytest
from hypothesis import given, settings, strategies as st

from devicehub.core.errors import BadInput
from devicehub.services.validation import (
    normalize_email,
    resolve_sketch_path,
    sanitize_relative_path,
    validate_fqbn,
    validate_password_strength,
    validate_serial_port,
)

EXTENSIONS = frozenset({".ino", ".bin"})

path_strategy = st.lists(
    st.sampled_from(["..", ".", "sketches", "blink", "a.ino", "/", "\\", "//", " "]),
    max_size=8,
).map("".join)


@settings(max_examples=200)
@given(raw=path_strategy)
def test_sanitized_paths_never_contain_parent_segments(raw: str):
    """
    Property: for any mixture of separators and dot segments, the sanitised
    path is either rejected or contains no ``..`` segment.
    """
    sanitized = sanitize_relative_path(raw)

    if sanitized is not None:
        assert ".." not in sanitized.split("/")
        assert "\\" not in sanitized


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("sketches/blink/blink.ino", "sketches/blink/blink.ino"),
        ("sketches\\blink\\blink.ino", "sketches/blink/blink.ino"),
        ("./sketches/./blink.ino", "sketches/blink.ino"),
        ("sketches/tmp/../blink.ino", "sketches/blink.ino"),
        ("../secret.ino", None),
        ("sketches/../../secret.ino", None),
        ("   ", None),
        ("sketches/bl\x00ink.ino", None),
        (42, None),
    ],
)
def test_sanitize_relative_path(raw, expected):
    assert sanitize_relative_path(raw) == expected


def _resolve(raw, root):
    return resolve_sketch_path(raw, project_root=root, allowed_extensions=EXTENSIONS)


def test_resolves_existing_sketch_inside_root(project_root):
    resolved = _resolve("sketches/blink/blink.ino", project_root)

    assert resolved == (project_root / "sketches/blink/blink.ino").resolve()


def test_absolute_path_outside_root_is_rejected(project_root, tmp_path_factory):
    outside = tmp_path_factory.mktemp("outside") / "evil.ino"
    outside.write_text("")

    with pytest.raises(BadInput) as excinfo:
        _resolve(str(outside), project_root)

    assert excinfo.value.message == "Sketch path must stay within project workspace"


@pytest.mark.skipif(os.name != "posix", reason="symlinks need POSIX permissions")
def test_symlink_escaping_root_is_rejected(project_root, tmp_path_factory):
    outside = tmp_path_factory.mktemp("outside") / "evil.ino"
    outside.write_text("")
    (project_root / "link.ino").symlink_to(outside)

    with pytest.raises(BadInput) as excinfo:
        _resolve("link.ino", project_root)

    assert excinfo.value.message == "Sketch path must stay within project workspace"


def test_embedded_nul_is_a_bad_request(project_root):
    with pytest.raises(BadInput) as excinfo:
        _resolve("sketches/blink/bl\x00ink.ino", project_root)

    assert excinfo.value.message == "Invalid sketch path"


def test_directory_is_rejected(project_root):
    (project_root / "folder.ino").mkdir()

    with pytest.raises(BadInput) as excinfo:
        _resolve("folder.ino", project_root)

    assert excinfo.value.message == "Sketch path must point to a file"


def test_extension_check_is_case_insensitive(project_root):
    (project_root / "FIRMWARE.BIN").write_bytes(b"\x00")

    assert _resolve("FIRMWARE.BIN", project_root).name == "FIRMWARE.BIN"


@pytest.mark.parametrize("port", ["/dev/ttyUSB0", "COM3", "/dev/cu.usbserial-0001", "tty:1"])
def test_accepts_serial_ports(port):
    assert validate_serial_port(port) == port


@pytest.mark.parametrize(
    "port",
    ["", "COM3 && reboot", "/dev/tty$(id)", "a" * 201, None, "COM\uff13\u00e9", "/dev/ttyUSB\u0660"],
)
def test_rejects_serial_ports(port):
    with pytest.raises(BadInput):
        validate_serial_port(port)


def test_fqbn_rules():
    assert validate_fqbn(None) is None
    assert validate_fqbn("") is None
    assert validate_fqbn("esp32:esp32:esp32") == "esp32:esp32:esp32"
    for bad in ("ab", "esp32 esp32", "x" * 121, 7, "esp32:\u00e9sp32:esp32", "\u0661\u0662\u0663"):
        with pytest.raises(BadInput):
            validate_fqbn(bad)


def test_email_is_trimmed_and_lowercased():
    assert normalize_email("  Maker@Example.COM ") == "maker@example.com"


@pytest.mark.parametrize("email", ["no-at-sign", "a@b", "a b@c.de", "x" * 250 + "@e.io"])
def test_rejects_malformed_email(email):
    with pytest.raises(BadInput) as excinfo:
        normalize_email(email)

    assert excinfo.value.message == "Invalid email format"


def test_email_must_be_a_string():
    with pytest.raises(BadInput) as excinfo:
        normalize_email(["a@b.co"])

    assert excinfo.value.message == "Bad input types"


@pytest.mark.parametrize("password", ["short1", "onlyletters", "1234567890"])
def test_rejects_weak_passwords(password):
    with pytest.raises(BadInput):
        validate_password_strength(password)


def test_rejects_overlong_password():
    with pytest.raises(BadInput) as excinfo:
        validate_password_strength("a1" * 65)

    assert excinfo.value.message == "Password must be at most 128 characters"


@settings(max_examples=100)
@given(
    letters=st.text(alphabet="abcdefghijklmnopqrstuvwxyz", min_size=1, max_size=60),
    digits=st.text(alphabet="0123456789", min_size=1, max_size=60),
)
def test_passwords_with_letter_and_digit_are_accepted(letters: str, digits: str):
    """
    Property: any 8-128 character password containing a letter and a digit
    passes the strength check unchanged.
    """
    password = (letters + digits).ljust(8, "x")

    assert validate_password_strength(password) == password
