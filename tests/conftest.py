import pytest

from blockchain_integrations import AuthError, ChainError
from config import Settings
from database_adapter import DatabaseAdapter
from verification import ContractRef, EnrollmentService
from verify_cron import Reconciler

BALANCE_CONTRACT = ContractRef("secret1balancecontract", "balancehash")
MEMBERSHIP_CONTRACT = ContractRef("secret1membershipcontract", "membershiphash")


class FakeClock:
    def __init__(self, now=1_700_000_000):
        self.now = now

    def __call__(self):
        return self.now


class FakeChain:
    """Chain adapter double; every query is recorded in self.calls."""

    def __init__(self):
        self.calls = []
        self.balances = {}
        self.member_codes = {}
        self.valid_codes = set()
        self.balance_error = None
        self.member_code_error = None
        self.valid_codes_error = None

    async def query_balance(self, contract_addr, code_hash, address, viewing_key):
        self.calls.append(("balance", address))
        if self.balance_error:
            raise self.balance_error
        if viewing_key != "good_key":
            raise AuthError("Wrong viewing key for this address or viewing key not set")
        return self.balances.get(address, 0)

    async def query_member_code(self, contract_addr, code_hash, address, viewing_key):
        self.calls.append(("member_code", address))
        if self.member_code_error:
            raise self.member_code_error
        return self.member_codes.get(address, "")

    async def query_valid_codes(self, contract_addr, code_hash, codes):
        self.calls.append(("valid_codes", frozenset(codes)))
        if self.valid_codes_error:
            raise self.valid_codes_error
        return set(codes) & self.valid_codes


class FakeInvites:
    def __init__(self):
        self.sent = []
        self.error = None

    async def issue_invite(self, user_id):
        if self.error:
            raise self.error
        self.sent.append(user_id)
        return f"https://t.me/+invite{user_id}"


class FakeRemover:
    def __init__(self):
        self.removed = []
        self.failing = {}

    async def remove_member(self, user_id):
        if user_id in self.failing:
            raise self.failing[user_id]
        self.removed.append(user_id)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock):
    db = DatabaseAdapter(sqlite_path=str(tmp_path / "members.db"), clock=clock)
    yield db
    db.close()


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def invites():
    return FakeInvites()


@pytest.fixture
def remover():
    return FakeRemover()


@pytest.fixture
def enrollment(chain, store, invites):
    return EnrollmentService(chain, store, invites, BALANCE_CONTRACT, MEMBERSHIP_CONTRACT,
                             min_balance=1_000_000)


@pytest.fixture
def reconciler(chain, store, remover):
    return Reconciler(chain, store, remover, MEMBERSHIP_CONTRACT, holder="test-runner")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        telegram_token="123:abc",
        private_chat_id=-1001742085729,
        admin_user_ids=frozenset({42}),
        lcd_url="https://lcd.example",
        chain_id="secret-4",
        balance_contract=BALANCE_CONTRACT.address,
        balance_code_hash=BALANCE_CONTRACT.code_hash,
        membership_contract=MEMBERSHIP_CONTRACT.address,
        membership_code_hash=MEMBERSHIP_CONTRACT.code_hash,
        min_balance=1_000_000,
        validator_address="secretvaloper1test",
        chain_timeout=5.0,
        data_dir=str(tmp_path),
        database_url=None,
        price_api_url="https://prices.example/graphql",
        price_cache_ttl=300.0,
        invite_ttl_minutes=10,
    )


@pytest.fixture
def transient_error():
    return ChainError("Timeout querying /compute/v1beta1/query")
