"""Stand-in for powershell.exe in gateway tests.

Echoes the -Command text on stdout. ``Write-Output -Text '<literal>'`` prints the
literal decoded the way PowerShell reads single-quoted strings. Markers inside the
command change behaviour: ``__exit:N__`` exits with code N and writes to stderr,
``__sleep:S__`` sleeps S seconds first, ``__flood:N__`` writes N bytes of output
instead of the echo.
"""

import re
import sys
import time

SINGLE_QUOTES = "'‘’‚‛"
WRITE_OUTPUT_PREFIX = "Write-Output -Text "


def read_single_quoted(text):
    """Decode a single-quoted literal at the start of ``text``; None if unterminated."""
    if not text or text[0] not in SINGLE_QUOTES:
        return None
    chars = []
    i = 1
    while i < len(text):
        ch = text[i]
        if ch in SINGLE_QUOTES:
            if i + 1 < len(text) and text[i + 1] in SINGLE_QUOTES:
                chars.append(ch)
                i += 2
                continue
            return "".join(chars)
        chars.append(ch)
        i += 1
    return None


def main(argv):
    sys.stdout.reconfigure(encoding="utf-8")
    command = argv[argv.index("-Command") + 1] if "-Command" in argv else ""

    sleep = re.search(r"__sleep:([\d.]+)__", command)
    if sleep:
        time.sleep(float(sleep.group(1)))

    flood = re.search(r"__flood:(\d+)__", command)
    if flood:
        sys.stdout.write("x" * int(flood.group(1)))
    elif command.startswith(WRITE_OUTPUT_PREFIX):
        decoded = read_single_quoted(command[len(WRITE_OUTPUT_PREFIX):])
        if decoded is None:
            sys.stderr.write("The string is missing the terminator: '.")
            return 1
        sys.stdout.write(decoded)
    else:
        sys.stdout.write(command)
    sys.stdout.flush()

    code = re.search(r"__exit:(\d+)__", command)
    if code:
        sys.stderr.write("simulated failure")
        return int(code.group(1))
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
