import random

# Browser identity presented to the upstream; the client-hint headers must agree with it
DEFAULT_USER_AGENT = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/143.0.0.0 Safari/537.36'
)
SEC_CH_UA = '"Chromium";v="143", "Not A(Brand";v="24"'
SEC_CH_UA_PLATFORM = '"Windows"'


def get_random_windows_ua():
    """Generates a random Windows User-Agent string."""
    # Recent Chromium-family builds only, unsigned requests are not fingerprinted
    user_agents = [
        DEFAULT_USER_AGENT,
        'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/142.0.0.0 Safari/537.36',
        'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/141.0.0.0 Safari/537.36',
        'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/142.0.0.0 Safari/537.36 Edg/142.0.0.0',
    ]
    return random.choice(user_agents)
