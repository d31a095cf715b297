import subprocess
import sys


def test_cli_help() -> None:
    cp = subprocess.run(
        [sys.executable, "-m", "polishcons", "--help"],
        check=True,
        capture_output=True,
        text=True,
    )
    assert "polishcons" in cp.stdout.lower()
    assert "polish" in cp.stdout
