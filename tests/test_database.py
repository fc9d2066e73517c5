import pytest

from extinitiator.store.database import (
    Endpoint,
    EthSubscription,
    KeeperSubscription,
    NEARSubscription,
    RecordNotFoundError,
    StoreError,
    Subscription,
    bytes_value,
    connect_to_db,
    scan_bytes,
    scan_string_array,
    string_array_value,
)


@pytest.fixture
def client():
    db = connect_to_db(":memory:")
    db.save_endpoint(Endpoint(name="test", type="ethereum", url="ws://localhost:8546/"))
    yield db
    db.close()


def _eth_sub(reference, job, endpoint_name="test"):
    return Subscription(
        reference_id=reference,
        job=job,
        endpoint_name=endpoint_name,
        ethereum=EthSubscription(addresses=["0x12345"], topics=["0xabcde"]),
    )


# --- string arrays --------------------------------------------------------


def test_scan_splits_comma_delimited_string():
    assert scan_string_array("abc,123") == ["abc", "123"]


def test_scan_fails_on_invalid_list():
    with pytest.raises(StoreError):
        scan_string_array('a""b,c')


def test_scan_fails_on_text_after_quoted_field():
    with pytest.raises(StoreError):
        scan_string_array('"a"b,c')


def test_scan_empty_and_none_give_none():
    assert scan_string_array("") is None
    assert scan_string_array(None) is None


def test_value_turns_list_into_csv():
    assert string_array_value(["abc", "123"]) == "abc,123\n"


def test_value_of_empty_list():
    assert string_array_value([]) == "\n"


def test_value_quotes_special_fields():
    assert string_array_value(["a,b", 'c"d', ""]) == '"a,b","c""d",\n'


@pytest.mark.parametrize(
    "items", [["a,b", 'c"d', ""], ["x"], [" lead", "multi\nline"], ["", "", "z"]]
)
def test_string_array_round_trip(items):
    assert scan_string_array(string_array_value(items)) == items


def test_bytes_round_trip():
    data = b"\x00\xffabc"
    assert scan_bytes(bytes_value(data)) == data
    assert bytes_value(b"hello") == "hello"


def test_scan_bytes_rejects_other_types():
    with pytest.raises(StoreError):
        scan_bytes(42)


# --- client ---------------------------------------------------------------


def test_connect_to_bad_path_fails(tmp_path):
    with pytest.raises(StoreError):
        connect_to_db(str(tmp_path / "missing" / "dir" / "db.sqlite"))


def test_save_subscription(client):
    with pytest.raises(StoreError):
        client.save_subscription(_eth_sub("abc", "test123", endpoint_name=""))
    with pytest.raises(StoreError):
        client.save_subscription(_eth_sub("abc", "test123", endpoint_name="non-existent"))

    sub = _eth_sub("abc", "test123")
    client.save_subscription(sub)
    assert sub.id is not None

    subs = client.load_subscriptions()
    assert len(subs) == 1
    assert subs[0].reference_id == "abc"
    assert subs[0].endpoint.name == "test"

    client.delete_subscription(Subscription())
    assert len(client.load_subscriptions()) == 1

    client.delete_subscription(sub)
    assert client.load_subscriptions() == []


def test_save_subscription_takes_name_from_endpoint(client):
    sub = Subscription(reference_id="r", job="j", endpoint=Endpoint(name="test"))
    client.save_subscription(sub)
    assert sub.endpoint_name == "test"
    assert client.load_subscription("j").endpoint.url == "ws://localhost:8546/"


def test_save_subscription_rejects_duplicate_reference(client):
    client.save_subscription(_eth_sub("dup", "job-a"))
    with pytest.raises(StoreError):
        client.save_subscription(_eth_sub("dup", "job-b"))


@pytest.mark.parametrize(
    "endpoint",
    [
        Endpoint(url="http://localhost:8545/", type="ethereum", refresh_int=5, name="eth-main"),
        Endpoint(url="ws://localhost:8546/", type="not-ethereum", refresh_int=0, name="eth-main"),
    ],
)
def test_save_endpoint(client, endpoint):
    client.save_endpoint(endpoint)
    loaded = client.load_endpoint(endpoint.name)
    assert loaded.name == endpoint.name
    assert loaded.url == endpoint.url
    assert loaded.type == endpoint.type
    assert loaded.refresh_int == endpoint.refresh_int


def test_save_endpoint_overwrites_by_name(client):
    client.save_endpoint(Endpoint(url="http://localhost:8545/", type="ethereum", refresh_int=5, name="eth-main"))
    client.save_endpoint(Endpoint(url="ws://localhost:8546/", type="not-ethereum", refresh_int=0, name="eth-main"))
    loaded = client.load_endpoint("eth-main")
    assert (loaded.url, loaded.type, loaded.refresh_int) == ("ws://localhost:8546/", "not-ethereum", 0)


def test_prepared_subscription_has_chain_settings(client):
    sub = _eth_sub("prepareTestA", "prepareTestA")
    client.save_subscription(sub)
    prepared = client.load_subscription("prepareTestA")
    assert prepared.ethereum.addresses == sub.ethereum.addresses
    assert prepared.ethereum.topics == sub.ethereum.topics
    assert prepared.endpoint.name == sub.endpoint_name


def test_load_subscription(client):
    job_id = "someJobId123"
    sub = _eth_sub("LoadSubscriptionTestA", job_id)
    client.save_subscription(sub)

    res = client.load_subscription(job_id)
    assert res.reference_id == sub.reference_id
    assert res.job == sub.job

    with pytest.raises(RecordNotFoundError):
        client.load_subscription("invalid")


def test_keeper_subscription_round_trip(client):
    client.save_endpoint(Endpoint(name="keep", type="keeper", url="http://localhost:8545/"))
    sub = Subscription(
        reference_id="k",
        job="keeper-job",
        endpoint_name="keep",
        keeper=KeeperSubscription(address="0xabc", upkeep_id="7", from_address=bytes(range(20))),
    )
    client.save_subscription(sub)
    loaded = client.load_subscription("keeper-job")
    assert loaded.keeper.address == "0xabc"
    assert loaded.keeper.upkeep_id == "7"
    assert loaded.keeper.from_address == bytes(range(20))


def test_near_subscription_round_trip(client):
    client.save_endpoint(Endpoint(name="near-main", type="near", url="http://localhost:3030/"))
    sub = Subscription(
        reference_id="n",
        job="near-job",
        endpoint_name="near-main",
        near=NEARSubscription(account_ids=["alice.near", "bob.near"]),
    )
    client.save_subscription(sub)
    assert client.load_subscription("near-job").near.account_ids == ["alice.near", "bob.near"]


def test_delete_endpoint(client):
    sub = _eth_sub("DeleteEndpointTestA", "DeleteEndpointTestA")
    client.save_subscription(sub)

    client.delete_endpoint("test")

    with pytest.raises(RecordNotFoundError):
        client.load_endpoint("test")
    with pytest.raises(RecordNotFoundError):
        client.load_subscription(sub.job)


def test_restore_endpoint(client):
    client.delete_endpoint("test")
    client.restore_endpoint("test")
    assert client.load_endpoint("test").type == "ethereum"


def test_save_endpoint_restores_deleted(client):
    client.delete_endpoint("test")
    client.save_endpoint(Endpoint(name="test", type="tezos", url="http://localhost:8732/"))
    assert client.load_endpoint("test").type == "tezos"


def test_delete_all_endpoints_except(client):
    sub = _eth_sub("DeleteAllEndpointsExceptTestA", "DeleteAllEndpointsExceptTestA")
    client.save_subscription(sub)

    new_endpoint = Endpoint(url="http://localhost:8545/", type="ethereum", name="test2")
    client.save_endpoint(new_endpoint)
    other = _eth_sub("other", "other-job", endpoint_name="test2")
    client.save_subscription(other)

    client.delete_all_endpoints_except([sub.endpoint_name])

    assert client.load_endpoint(sub.endpoint_name).name == "test"
    assert client.load_subscription(sub.job).reference_id == sub.reference_id

    with pytest.raises(RecordNotFoundError):
        client.load_endpoint(new_endpoint.name)
    with pytest.raises(RecordNotFoundError):
        client.load_subscription("other-job")


def test_client_is_context_manager(tmp_path):
    path = str(tmp_path / "store.db")
    with connect_to_db(path) as db:
        db.save_endpoint(Endpoint(name="e", type="ethereum", url="ws://localhost:8546/"))
    with connect_to_db(path) as db:
        assert db.load_endpoint("e").url == "ws://localhost:8546/"