"""Text banner for the Finsight Feed CLI."""

BANNER = r"""
  +--------------------------------------+
  |   F I N S I G H T   //   F E E D     |
  +--------------------------------------+
"""

TAGLINE = "NSE/BSE equities, INR forex and crypto -- polled, cached, streamed"


def print_banner() -> None:
    """Print the banner and tagline."""
    print(BANNER)
    print(f"  {TAGLINE}")
    print()
