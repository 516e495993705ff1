from typing import Dict, Optional, Union


def dict_copy(source: Dict = None, update: Optional[Dict] = None) -> Dict:
    copy = dict(source) if source else {}
    if update:
        copy.update(update)
    return copy


def coerce_bool(val: Optional[Union[str, bool]]):
    if not val:
        return False
    return val is True or (isinstance(val, str) and val.lower() in ('true', '1', 'y', 'yes'))
