from __future__ import annotations

import pytest

from factories import make_services
from panel_billing.container import BillingServices


@pytest.fixture
def billing(tmp_path) -> BillingServices:
    return make_services(tmp_path)
