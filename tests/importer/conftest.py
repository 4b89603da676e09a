from __future__ import annotations

import pytest

from roster_app.importer.pipeline import SessionController, SqlCustomerStore
from roster_app.models import Customer, db


def _roster_csv(*lines: str) -> bytes:
    """Join semicolon separated lines into an uploadable CSV payload."""
    return ("\n".join(lines) + "\n").encode("utf-8")


BASIC_ROSTER = _roster_csv(
    "Kundenavn;Adresse;Epost",
    "Fjordkafeen AS;Strandgata 4;post@fjordkafeen.no",
    "Bakeriet Nord;Storgata 12;kari@firma,no",
    "Hotell Vest;Kaigata 1;resepsjon@hotellvest.no",
)


def _confirmed_entries(mapping: list[dict]) -> list[dict]:
    """Turn suggested mapping entries into the operator's confirmed mapping."""
    entries = []
    for entry in mapping:
        confirmed = dict(entry)
        confirmed["human_confirmed"] = True
        entries.append(confirmed)
    return entries


class FlakyCustomerStore(SqlCustomerStore):
    """SQL store whose first create for each listed name fails like a dropped connection."""

    def __init__(self, app, failing_names):
        super().__init__(app)
        self.failing = set(failing_names)
        self.attempts: list[str] = []

    def create(self, organization_id, attributes, *, batch_id, commit_id):
        name = attributes.get("name")
        self.attempts.append(name)
        if name in self.failing:
            self.failing.discard(name)
            raise ConnectionError(f"customer store timed out writing {name}")
        return super().create(organization_id, attributes, batch_id=batch_id, commit_id=commit_id)


@pytest.fixture
def roster_csv():
    return _roster_csv


@pytest.fixture
def confirm_mapping():
    return _confirmed_entries


@pytest.fixture
def basic_roster():
    return BASIC_ROSTER


@pytest.fixture
def controller(app):
    return SessionController()


@pytest.fixture
def upload_roster(controller, test_organization):
    """Upload a payload for the test organization; returns ``(state, payload)``."""

    def _upload(payload: bytes = BASIC_ROSTER, file_name: str = "kunder.csv", **kwargs):
        return controller.upload(test_organization.id, file_name, payload, **kwargs)

    return _upload


@pytest.fixture
def preview_batch(controller, upload_roster):
    """Upload, approve cleaning, confirm the suggested mapping and validate; returns the session."""

    def _prepare(payload: bytes = BASIC_ROSTER, **kwargs):
        state, _ = upload_roster(payload, **kwargs)
        state = controller.approve_cleaning(state)
        state = controller.apply_mapping(state, _confirmed_entries(state.mapping))
        return controller.to_preview(state)

    return _prepare


@pytest.fixture
def flaky_store(app):
    """Install a flaky store on the importer extension; configure ``failing`` before committing."""

    store = FlakyCustomerStore(app, ())
    app.extensions["importer"]["customer_store_factory"] = lambda _app: store
    yield store
    app.extensions["importer"]["customer_store_factory"] = None


@pytest.fixture
def customer_factory(test_organization):
    def _factory(name: str, address: str, **attributes) -> Customer:
        customer = Customer(organization_id=test_organization.id, name=name, address=address, **attributes)
        db.session.add(customer)
        db.session.commit()
        return customer

    return _factory
