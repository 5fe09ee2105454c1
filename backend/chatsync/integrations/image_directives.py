"""Image-generation directives embedded in model output.

The model asks for an image by writing ``[IMAGE_REQUEST: <description>]``.
Only the first directive in a reply is honored.
"""

import re
from typing import NamedTuple
from urllib.parse import quote

IMAGE_URL_TEMPLATE = "https://image.pollinations.ai/prompt/{prompt}?width=512&height=512&nologo=true"

_DIRECTIVE = re.compile(r"\[IMAGE_REQUEST:\s*(.+?)\]")

# Characters encodeURIComponent leaves alone
_URI_COMPONENT_SAFE = "-_.!~*'()"


class DirectiveResult(NamedTuple):
    text: str
    image_url: str | None


def image_url_for(prompt: str, template: str = IMAGE_URL_TEMPLATE) -> str:
    return template.format(prompt=quote(prompt, safe=_URI_COMPONENT_SAFE))


def extract_directive(response_text: str, template: str = IMAGE_URL_TEMPLATE) -> DirectiveResult:
    match = _DIRECTIVE.search(response_text)
    if match is None:
        return DirectiveResult(response_text, None)

    prompt = match.group(1).strip()
    cleaned = (response_text[:match.start()] + response_text[match.end():]).strip()
    if not cleaned:
        cleaned = f'Here\'s the image you requested: "{prompt}"'
    return DirectiveResult(cleaned, image_url_for(prompt, template))
