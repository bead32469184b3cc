"""Allow running as python -m jarvis_voice."""

from jarvis_voice.main import main

if __name__ == "__main__":
    main()
