"""Crisis keyword detection for counseling chat messages.

This is a best-effort safety net, not a clinical safeguard. It matches a
short fixed list of phrases and will miss anything phrased differently; a
negative result says nothing about the sender's safety. Callers should treat
a positive result as a cue to show support contacts, nothing more.
"""

DEFAULT_CRISIS_KEYWORDS = (
    "suicide",
    "kill myself",
    "end it all",
    "hurt myself",
    "can't go on",
    "want to die",
)

CRISIS_CONTACTS = (
    {
        "name": "National Crisis Hotline",
        "number": "1553",
        "description": "24/7 crisis intervention and suicide prevention",
    },
    {
        "name": "UST-Legazpi Security",
        "number": "(052) 482-0203",
        "description": "Campus emergency response",
    },
    {
        "name": "Legazpi City Emergency",
        "number": "911",
        "description": "Local emergency services",
    },
    {
        "name": "DOH Mental Health Hotline",
        "number": "1553",
        "description": "Department of Health crisis support",
    },
)


def _normalize(text):
    # Phones often send curly apostrophes ("can’t")
    return (text or "").lower().replace("’", "'").replace("‘", "'")


class CrisisDetector:
    def __init__(self, keywords=DEFAULT_CRISIS_KEYWORDS):
        self.keywords = tuple(_normalize(k) for k in keywords if k)

    def matches(self, text):
        lowered = _normalize(text)
        return [keyword for keyword in self.keywords if keyword in lowered]

    def scan(self, text):
        return bool(self.matches(text))


_default_detector = CrisisDetector()


def scan(text):
    """True if `text` contains one of the default crisis phrases."""
    return _default_detector.scan(text)


def support_prompt(delay_ms=500):
    """Payload the client shows after a crisis phrase was detected."""
    return {
        "delayMs": delay_ms,
        "advisory": True,
        "message": (
            "You're not alone. If you are thinking about harming yourself, "
            "please reach out to one of these contacts right now."
        ),
        "contacts": [dict(contact) for contact in CRISIS_CONTACTS],
    }
