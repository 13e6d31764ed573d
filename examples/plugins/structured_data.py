"""
Example extraction plugin.

Reports which structured-data format an HTML page embeds. Load it with
``WLS_PLUGIN_PATH=examples/plugins/structured_data.py``.
"""

import re

_LD_JSON = re.compile(r'<script[^>]+type=["\']application/ld\+json["\']', re.I)
_MICRODATA = re.compile(r"\sitemscope[\s>]", re.I)
_RDFA = re.compile(r"\s(typeof|property)=", re.I)


def ExtractLanguage(html):
    if _LD_JSON.search(html):
        return "json-ld"
    if _MICRODATA.search(html):
        return "microdata"
    if _RDFA.search(html):
        return "rdfa"
    return None
