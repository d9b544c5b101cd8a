"""Text model integration for expanding a creative prompt into sub-prompts."""

import logging
import re
import string
from dataclasses import dataclass

from openai import AsyncOpenAI

from config import TextModelConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PresetConfig:
    """A named shortcut for a common expansion request."""
    name: str
    count: int
    prompt: str


PRESETS: dict[str, PresetConfig] = {
    "font": PresetConfig(name="font", count=26, prompt="letters of the alphabet"),
    "gameAssets": PresetConfig(name="gameAssets", count=10, prompt="game assets"),
}

ALPHABET_DEFINITIONS = [f"the letter {letter}" for letter in string.ascii_uppercase]

_ALPHABET_PATTERN = re.compile(r'\b(alphabet|letters)\b', re.IGNORECASE)
_LIST_MARKER_PATTERN = re.compile(r'^(\d+\.|-|\*)')
_LETTER_DEFINITION_PATTERN = re.compile(r'^the letter [a-z]\.?$', re.IGNORECASE)

_INSTRUCTIONS = """

Special handling for alphabet requests:
- If the request is about "alphabet", "letters", or similar, generate exactly 26 descriptions in the format: "the letter A", "the letter B", "the letter C", etc.
- Use capital letters A through Z in alphabetical order

For all other requests:
- Each description should be unique and specific, but not overly flowery language or too abstract
- Keep each description concise (1-2 sentences max)
- Focus on visual and distinctive characteristics that would work well for image generation

Requirements for output:
- Return only the descriptions, one per line without any other text
- Each description is separated by a newline
- Do not include numbers or bullet points

Example format for non-alphabet requests:
A tall corn plant with golden kernels and green leaves.
A round orange pumpkin with thick green vines.
A bushy tomato plant with bright red fruits hanging from green stems."""


class ExpansionError(Exception):
    """Raised when a prompt cannot be expanded into definitions."""
    pass


class EmptyResponseError(ExpansionError):
    """The text model returned no usable text."""

    def __init__(self, message: str = "No text response received from the text model"):
        super().__init__(message)


class NoParsableLinesError(ExpansionError):
    """The response contained no lines left after filtering."""

    def __init__(self, message: str = "No valid definitions could be parsed from response"):
        super().__init__(message)


class UpstreamFailureError(ExpansionError):
    """The text model call itself failed (transport, quota, auth)."""
    pass


def resolve_preset(name: str) -> PresetConfig:
    """Look up a preset by name.

    Raises:
        KeyError: If the preset is unknown
    """
    try:
        return PRESETS[name]
    except KeyError:
        raise KeyError(f"Unknown preset: {name}. Choose from: {sorted(PRESETS)}") from None


def is_alphabet_request(prompt: str) -> bool:
    """Check whether a prompt asks for the letters of the alphabet."""
    return bool(_ALPHABET_PATTERN.search(prompt))


def normalize_alphabet(definitions: list[str]) -> list[str]:
    """Replace a letter-by-letter answer with the canonical A-Z list.

    Only applies when the model answered with "the letter X" lines; any other
    answer (e.g. "love letters" described as objects) is returned unchanged.
    """
    if not any(_LETTER_DEFINITION_PATTERN.match(line) for line in definitions):
        return definitions
    if definitions != ALPHABET_DEFINITIONS:
        logger.info(f"Normalizing {len(definitions)} letter definitions to A-Z")
    return list(ALPHABET_DEFINITIONS)


def build_definition_prompt(prompt: str, count: int | None = None) -> str:
    """Build the instruction sent to the text model.

    Args:
        prompt: The user's creative prompt
        count: Exact number of variations to request, or None to let the model decide

    Returns:
        The full instruction text
    """
    if count:
        instruction = (
            f'Generate {count} different, specific, and creative descriptions '
            f'based on this request: "{prompt}"'
        )
    else:
        instruction = (
            f'Generate different, specific, and creative descriptions based on this '
            f'request: "{prompt}". Decide on an appropriate number of variations '
            f'that would work well for this request.'
        )
    return instruction + _INSTRUCTIONS


def parse_definitions(raw_response: str) -> list[str]:
    """
    Split a raw model response into definition lines.

    Removes thinking blocks, blank lines and lines that start with list
    markers (numbering, "-" or "*").

    Args:
        raw_response: Raw text from the model

    Returns:
        Definitions in response order
    """
    text = re.sub(r'<think>.*?</think>', '', raw_response, flags=re.DOTALL)

    definitions = []
    for line in text.splitlines():
        line = line.strip()
        if not line or _LIST_MARKER_PATTERN.match(line):
            continue
        definitions.append(line)
    return definitions


class DefinitionGenerator:
    """Expands a creative prompt into distinct sub-prompts using a chat model."""

    def __init__(self, config: TextModelConfig, client: AsyncOpenAI | None = None):
        """Initialize the generator.

        Args:
            config: Text model configuration
            client: Optional pre-built client (tests inject fakes here)
        """
        self.config = config
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                base_url=self.config.base_url,
                api_key=self.config.api_key or "missing-api-key",
            )
        return self._client

    async def _complete(self, instruction: str) -> str | None:
        """Make the single chat completion call and return the message text."""
        response = await self.client.chat.completions.create(
            model=self.config.model,
            messages=[{"role": "user", "content": instruction}],
            temperature=self.config.temperature,
        )
        if not response.choices:
            return None
        return response.choices[0].message.content

    async def expand(self, prompt: str, desired_count: int | None = None) -> list[str]:
        """
        Expand a prompt into an ordered list of definitions.

        The model is always called. When an alphabet request comes back as
        "the letter X" lines, the list is completed to the 26 letters A-Z in
        order. The result is then truncated to ``desired_count`` when given.

        Args:
            prompt: The user's creative prompt
            desired_count: Exact number of variations wanted, or None

        Returns:
            Ordered list of definitions

        Raises:
            EmptyResponseError: If the model returned no text
            NoParsableLinesError: If no lines survived parsing
            UpstreamFailureError: If the model call failed
        """
        instruction = build_definition_prompt(prompt, desired_count)

        try:
            raw_response = await self._complete(instruction)
        except Exception as e:
            logger.warning(f"Definition generation failed: {e}")
            raise UpstreamFailureError(str(e) or "Unknown error occurred") from e

        if not raw_response or not raw_response.strip():
            raise EmptyResponseError()

        definitions = parse_definitions(raw_response)
        if is_alphabet_request(prompt):
            definitions = normalize_alphabet(definitions)
        if desired_count:
            definitions = definitions[:desired_count]

        if not definitions:
            raise NoParsableLinesError()

        logger.info(f"Expanded prompt into {len(definitions)} definitions")
        return definitions
