"""
Voice & presenter presets for the avatar provider.
The brand style picked at upload decides how the talking avatar sounds.

Two plan tiers: "basic" always animates the stock presenter image,
"premium" animates the uploaded image itself.
"""

DEFAULT_VOICE = "en-US-JennyNeural"
DEFAULT_STYLE = "Cheerful"
DEFAULT_PRESENTER_URL = (
    "https://create-images-results.d-id.com/DefaultPresenters/Noelle_f/image.png"
)

PLAN_TIERS = {
    "basic": {
        "name": "Basic",
        "supports_custom_presenters": False,
        "presets": {
            "professional": {"voice": "en-US-AriaNeural", "style": "Friendly"},
            "elegant": {"voice": "en-US-AriaNeural", "style": "Hopeful"},
            "bold": {"voice": "en-US-JennyNeural", "style": "Excited"},
            "playful": {"voice": "en-US-JennyNeural", "style": "Cheerful"},
            "luxury": {"voice": "en-US-AriaNeural", "style": "Hopeful"},
            "minimal": {"voice": "en-US-BrianNeural", "style": "Friendly"},
            "casual": {"voice": "en-US-JennyNeural", "style": "Cheerful"},
            "witty": {"voice": "en-US-JennyNeural", "style": "Excited"},
        },
    },
    "premium": {
        "name": "Premium",
        "supports_custom_presenters": True,
        "presets": {
            "professional": {"voice": "en-US-AriaNeural", "style": "Friendly"},
            "elegant": {"voice": "en-US-AriaNeural", "style": "Hopeful"},
            "bold": {"voice": "en-US-GuyNeural", "style": "Excited"},
            "playful": {"voice": "en-US-JennyNeural", "style": "Cheerful"},
            "luxury": {"voice": "en-US-AriaNeural", "style": "Hopeful"},
            "minimal": {"voice": "en-US-BrianNeural", "style": "Friendly"},
            "casual": {"voice": "en-US-GuyNeural", "style": "Cheerful"},
            "witty": {"voice": "en-US-JennyNeural", "style": "Excited"},
        },
    },
}


def get_voice_preset(brand_style: str | None, plan_tier: str = "basic") -> dict:
    """
    Return {voice, style, use_default_presenter} for a brand style.
    Unknown tiers fall back to basic, unknown styles to "professional".
    """
    tier = PLAN_TIERS.get((plan_tier or "").lower(), PLAN_TIERS["basic"])
    presets = tier["presets"]
    preset = presets.get((brand_style or "").lower(), presets["professional"])
    return {
        "voice": preset["voice"],
        "style": preset["style"],
        "use_default_presenter": not tier["supports_custom_presenters"],
    }
