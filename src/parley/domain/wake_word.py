import re

DEFAULT_WAKE_PHRASE_VARIANTS = ("hello", "hallo", "halo")


class WakePhraseDetector:
    """Case-insensitive containment check against the accepted spoken variants.

    Variants are tried in configured order; the first one contained in the
    transcript wins, even if another variant occurs earlier in the text.
    """

    def __init__(self, variants: list[str] | tuple[str, ...] = DEFAULT_WAKE_PHRASE_VARIANTS) -> None:
        self._variants = [v.strip().lower() for v in variants if v.strip()]
        self._patterns = [re.compile(re.escape(v), re.IGNORECASE) for v in self._variants]

    @property
    def variants(self) -> list[str]:
        return list(self._variants)

    def detect(self, transcript: str) -> str | None:
        match = self._first_match(transcript)
        if match is None:
            return None
        return match[0]

    def extract_command(self, transcript: str) -> str:
        match = self._first_match(transcript)
        if match is None:
            return transcript.strip()
        return transcript[match[1].end() :].strip()

    def _first_match(self, transcript: str) -> tuple[str, re.Match[str]] | None:
        for variant, pattern in zip(self._variants, self._patterns):
            found = pattern.search(transcript)
            if found:
                return variant, found
        return None
