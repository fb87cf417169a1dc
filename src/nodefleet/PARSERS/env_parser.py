"""
Parsers for instance .env files, supporting quotes and comments.
"""
from pathlib import Path
from typing import Dict, Mapping, Union

from dotenv import set_key, unset_key

PathLike = Union[str, Path]


class EnvParser:
    """
    Reads and writes the key=value configuration kept in each instance directory.
    Key order is preserved in both directions.
    """
    @staticmethod
    def parse(env_path: PathLike) -> Dict[str, str]:
        """
        Parses an .env file from a path.

        Args:
            env_path: Path to the .env file.

        Returns:
            Dict[str, str]: Ordered mapping of keys to values.
        """
        with open(env_path, 'r') as f:
            content = f.read()
        return EnvParser.parse_from_string(content)

    @staticmethod
    def parse_from_string(content: str) -> Dict[str, str]:
        """
        Parses key=value pairs from a string.
        Handles quotes, comments, escaped quotes and an optional "export " prefix.
        """
        env = {}
        for line in content.splitlines():
            line = line.strip()
            if not line or line.startswith('#'):
                continue

            if '=' not in line:
                continue

            key, value = line.split('=', 1)
            key = key.strip()
            if key.startswith('export '):
                key = key[len('export '):].strip()
            value = value.strip()

            if not key:
                continue

            if value.startswith('"') or value.startswith("'"):
                quote = value[0]
                end_quote_idx = value.find(quote, 1)
                while end_quote_idx != -1 and value[end_quote_idx - 1] == '\\':
                    end_quote_idx = value.find(quote, end_quote_idx + 1)
                if end_quote_idx != -1:
                    value = value[1:end_quote_idx].replace(f'\\{quote}', quote)
            elif '#' in value:
                # Unquoted: a " #" starts a trailing comment
                value = value.split(' #')[0].split('\t#')[0].strip()

            env[key] = value

        return env

    @staticmethod
    def needs_quotes(value: str) -> bool:
        """Whether a value would not survive being written unquoted."""
        return any(c in value for c in (' ', '\t', '#', '"', "'"))

    @staticmethod
    def dump(env: Mapping[str, str]) -> str:
        """
        Serializes a mapping to .env text, quoting values that need it.
        """
        lines = []
        for key, value in env.items():
            value = str(value)
            if EnvParser.needs_quotes(value):
                value = '"' + value.replace('"', '\\"') + '"'
            lines.append(f"{key}={value}")
        return "\n".join(lines) + "\n"

    @staticmethod
    def write(env_path: PathLike, env: Mapping[str, str]) -> None:
        """
        Writes a complete .env file, replacing any existing content.
        """
        Path(env_path).write_text(EnvParser.dump(env))

    @staticmethod
    def update(env_path: PathLike, updates: Mapping[str, str]) -> Dict[str, str]:
        """
        Sets keys in place, leaving comments and the order of other keys untouched.
        An empty-string value removes the key.
        Values are quoted by the same rule dump uses.

        Returns:
            Dict[str, str]: The configuration after the update.
        """
        path = str(env_path)
        for key, value in updates.items():
            if value == "":
                unset_key(path, key, quote_mode="never")
            else:
                value = str(value)
                quote_mode = "always" if EnvParser.needs_quotes(value) else "never"
                set_key(path, key, value, quote_mode=quote_mode)
        return EnvParser.parse(env_path)
