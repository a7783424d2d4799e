"""
Shared fixtures for the workflow core tests.

Everything runs against the in-memory repository and directory; no MongoDB
is needed.
"""
import pytest

from services.entity_repository import InMemoryEntityRepository
from services.workflow_config import Actor, CompanyWorkflowConfig, InMemoryCompanyConfigProvider, Role
from services.workflow_engine import PRWorkflowEngine
from services.workflow_events import WorkflowEventBus
from services.notifications.recipients import InMemoryUserDirectory

COMPANY_ID = "1001"
VENDOR_ID = "2001"
LOCATION_ID = "3001"


def make_pr(pr_id: str, pr_number: str, pr_status: str = "DRAFT", unified: str = None, **overrides) -> dict:
    """A PR document as the orders collection stores it."""
    doc = {
        "id": pr_id,
        "pr_number": pr_number,
        "pr_status": pr_status,
        "unified_pr_status": unified or pr_status,
        "companyId": COMPANY_ID,
        "vendorId": VENDOR_ID,
        "locationId": LOCATION_ID,
        "locationName": "Pune Plant",
        "employeeId": "u-emp",
        "employeeEmail": "eve@acme.test",
        "employeeName": "Eve Employee",
        "vendorName": "Uniform Supplies Ltd",
        "total_amount": 1500.0,
        "items": [{"sku": "SHIRT-M", "qty": 2}, {"sku": "TROUSER-32", "qty": 1}],
        "dispatchStatus": "AWAITING_FULFILMENT",
        "deliveryStatus": "NOT_DELIVERED",
        "version": 0,
    }
    doc.update(overrides)
    return doc


@pytest.fixture
def pr_factory():
    return make_pr


@pytest.fixture
def repo():
    return InMemoryEntityRepository(seed={
        "orders": [make_pr("ord-1", "PR-001"), make_pr("ord-2", "PR-002")],
    })


@pytest.fixture
def config():
    return CompanyWorkflowConfig(
        company_id=COMPANY_ID,
        enable_pr_po_workflow=True,
        enable_site_admin_pr_approval=True,
        require_company_admin_po_approval=True,
        allow_multi_pr_po=False,
    )


@pytest.fixture
def config_provider(config):
    return InMemoryCompanyConfigProvider([config])


@pytest.fixture
def bus():
    return WorkflowEventBus()


@pytest.fixture
def events(bus):
    """Every event the bus delivers, in order. Await bus.drain() before reading."""
    received = []

    async def collect(event):
        received.append(event)

    bus.subscribe("*", collect)
    return received


@pytest.fixture
def engine(repo, bus):
    return PRWorkflowEngine(repo, bus)


@pytest.fixture
def employee():
    return Actor(user_id="u-emp", role=Role.EMPLOYEE, user_name="Eve Employee", email="eve@acme.test")


@pytest.fixture
def site_admin():
    return Actor(user_id="u-site", role=Role.SITE_ADMIN, user_name="Sam Site", email="sam@acme.test")


@pytest.fixture
def company_admin():
    return Actor(user_id="u-cadmin", role=Role.COMPANY_ADMIN, user_name="Cora Admin", email="cora@acme.test")


@pytest.fixture
def directory():
    return InMemoryUserDirectory(
        users=[
            {"id": "u-emp", "company_id": COMPANY_ID, "role": "EMPLOYEE",
             "email": "eve@acme.test", "name": "Eve Employee", "location_id": LOCATION_ID},
            {"id": "u-site", "company_id": COMPANY_ID, "role": "SITE_ADMIN",
             "email": "sam@acme.test", "name": "Sam Site", "location_id": LOCATION_ID},
            {"id": "u-site-other", "company_id": COMPANY_ID, "role": "SITE_ADMIN",
             "email": "omar@acme.test", "name": "Omar Other", "location_id": "3999"},
            {"id": "u-cadmin", "company_id": COMPANY_ID, "role": "COMPANY_ADMIN",
             "email": "cora@acme.test", "name": "Cora Admin", "location_id": None},
            {"id": "u-fin", "company_id": COMPANY_ID, "role": "FINANCE_ADMIN",
             "email": "finn@acme.test", "name": "Finn Finance", "location_id": None},
            {"id": "u-foreign", "company_id": "1002", "role": "COMPANY_ADMIN",
             "email": "zed@other.test", "name": "Zed Foreign", "location_id": None},
        ],
        vendors=[
            {"id": VENDOR_ID, "email": "orders@uniform-supplies.test", "name": "Uniform Supplies Ltd"},
        ],
    )
