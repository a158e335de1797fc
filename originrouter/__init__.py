from pathlib import Path


def get_version() -> str:
  return Path(__file__).parent.resolve().joinpath('VERSION').read_text().strip()


version = get_version()
