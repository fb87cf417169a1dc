# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Parsers for the compose.yml definitions kept in each instance directory.
"""
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml


class ComposeParser:
    """
    Reads generated compose definitions to find out which networks they join.
    Variable references such as ${EL_RPC_PORT} are left untouched; compose resolves
    them from the instance's .env at start time.
    """

    def parse(self, compose_path: Union[str, Path]) -> Optional[Dict[str, Any]]:
        """
        Parses a compose file from a path.

        :param compose_path: Path to the compose file.
        :return: The parsed document, or None if the file does not exist.
        """
        path = Path(compose_path)
        if not path.exists():
            return None
        with open(path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> Dict[str, Any]:
        """
        Parses a compose document from a string.

        :param content: YAML content of the compose file.
        :return: The parsed document; an empty document parses to {}.
        """
        data = yaml.safe_load(content)
        if not data:
            data = {}
        if not isinstance(data, dict):
            raise ValueError("Compose document must be a mapping")
        return data

    def networks(self, document: Optional[Dict[str, Any]]) -> Optional[List[str]]:
        """
        Actual names of the top-level networks, in declaration order.

        :param document: A parsed compose document.
        :return: Network names, or None when there is no document.
        """
        if document is None:
            return None
        names = []
        for key, spec in (document.get('networks') or {}).items():
            if isinstance(spec, dict) and spec.get('name'):
                names.append(str(spec['name']))
            else:
                names.append(str(key))
        return names

    def service_networks(self, document: Optional[Dict[str, Any]]) -> Dict[str, List[str]]:
        """
        Networks each service joins, as listed under services.<name>.networks.
        """
        if not document:
            return {}
        result = {}
        for name, spec in (document.get('services') or {}).items():
            nets = (spec or {}).get('networks') or []
            if isinstance(nets, dict):
                nets = list(nets.keys())
            result[name] = [str(n) for n in nets]
        return result
