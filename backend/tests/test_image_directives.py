"""Tests for image-request directive parsing."""

from chatsync.integrations.image_directives import extract_directive, image_url_for


def test_directive_is_stripped_and_encoded():
    text, url = extract_directive("Sure! [IMAGE_REQUEST: a red fox in snow]")

    assert text == "Sure!"
    assert "a%20red%20fox%20in%20snow" in url
    assert url.startswith("https://image.pollinations.ai/prompt/")
    assert url.endswith("?width=512&height=512&nologo=true")


def test_no_directive_returns_text_unchanged():
    original = "  Just a normal answer.\n"
    result = extract_directive(original)

    assert result.text == original
    assert result.image_url is None
    assert extract_directive(result.text) == result


def test_directive_only_gets_default_caption():
    text, url = extract_directive("[IMAGE_REQUEST:   a castle at dusk  ]")

    assert text == 'Here\'s the image you requested: "a castle at dusk"'
    assert "a%20castle%20at%20dusk" in url


def test_only_first_directive_is_honored():
    text, url = extract_directive("[IMAGE_REQUEST: cat] and [IMAGE_REQUEST: dog]")

    assert "cat" in url
    assert "dog" not in url
    assert text == "and [IMAGE_REQUEST: dog]"


def test_encoding_matches_uri_component_rules():
    url = image_url_for("sun & moon/stars (v2)!")
    assert "sun%20%26%20moon%2Fstars%20(v2)!" in url


def test_custom_template():
    _, url = extract_directive("[IMAGE_REQUEST: tree]", template="https://img.test/{prompt}.png")
    assert url == "https://img.test/tree.png"
