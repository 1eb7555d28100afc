"""Direct Gemini connectivity check.

Usage:
  python3 -m studyquiz.check_gemini_connection
"""

import sys

from .config import PROJECT_DIR, Config
from .generator import GeminiGenerator, GenerationError


def main() -> int:
    config = Config.from_env()
    print(f"Checked env files: {PROJECT_DIR / '.env'}, ~/.env")
    if not config.google_api_key:
        print("ERROR: GOOGLE_API_KEY is not set.")
        return 1

    generator = GeminiGenerator(config.google_api_key, config.gemini_model, timeout=60)
    try:
        output_text = generator.generate("Reply with exactly OK")
    except GenerationError as exc:
        print(f"ERROR: Gemini request failed: {exc}")
        return 2

    print(f"Model: {config.gemini_model}")
    print(f"Output: {output_text!r}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
