"""Voice mapping from OpenAI voice names to Edge neural voices."""


class VoiceMapper:
    """Maps OpenAI voice names to Edge voice names."""

    def __init__(self, mapping: dict[str, str] | None = None, default_voice: str = "zh-CN-XiaoxiaoNeural"):
        """
        Expected structure (``voice_mapping`` in edgevoice.yaml):

        voice_mapping:
          alloy: "zh-CN-XiaoxiaoNeural"
          echo: "zh-CN-YunxiNeural"
        """
        self._mappings: dict[str, str] = dict(mapping or {})
        self._default_voice = default_voice

    def map(self, voice: str | None) -> str:
        """
        Args:
            voice: Requested voice, OpenAI or Edge name; ``None`` or empty
                selects the default voice.

        Returns:
            Mapped voice name, or the original if no mapping exists
        """
        if not voice:
            return self._default_voice
        return self._mappings.get(voice, voice)

    @property
    def default_voice(self) -> str:
        return self._default_voice
