"""Test helpers for the FundX test suite"""

from tests.helpers.fakes import FakeBroker, fund_config_dict, make_position

__all__ = [
    "FakeBroker",
    "fund_config_dict",
    "make_position",
]
