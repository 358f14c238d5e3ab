from sqlmodel import select

from bidding import place_bid
from main import manager
from models import Bid, Product
from populate_db import populate


def test_feed_announces_price_on_connect(client, product):
    with client.websocket_connect(f'/products/{product.id}/ws') as websocket:
        assert websocket.receive_json()['new_price'] == 100.0


def test_bid_over_socket_is_broadcast(client, product):
    url = f'/products/{product.id}/ws'
    with client.websocket_connect(url) as websocket:
        websocket.receive_json()
        websocket.send_json({'bid': 150, 'bidder_name': 'carol'})
        message = websocket.receive_json()

    assert message['new_price'] == 150
    assert message['bid']['bidder_name'] == 'carol'
    assert message['message'] == 'carol has bid 150.0!'
    assert manager.auction_connections.get(product.id) is None


def test_rejected_bid_only_reaches_sender(client, product):
    with client.websocket_connect(f'/products/{product.id}/ws') as websocket:
        websocket.receive_json()
        websocket.send_json({'bid': 90, 'bidder_name': 'carol'})
        assert websocket.receive_json()['code'] == 'BID_AMOUNT_TOO_LOW'

        websocket.send_json({'price': 500})
        assert websocket.receive_json()['code'] == 'INVALID_MESSAGE'

        websocket.send_json({'bid': 120, 'bidder_name': 'carol'})
        assert websocket.receive_json()['new_price'] == 120


def test_socket_sees_bids_from_elsewhere(client, session, product):
    with client.websocket_connect(f'/products/{product.id}/ws') as websocket:
        websocket.receive_json()
        place_bid(session, product.id, 200, 'dave')
        # the socket read the product at 100 when it connected
        websocket.send_json({'bid': 150, 'bidder_name': 'carol'})
        assert websocket.receive_json()['code'] == 'BID_AMOUNT_TOO_LOW'
        websocket.send_json({'bid': 201, 'bidder_name': 'carol'})
        assert websocket.receive_json()['new_price'] == 201


def test_feed_refuses_inactive_product(client):
    with client.websocket_connect('/products/999/ws') as websocket:
        assert websocket.receive_json()['code'] == 'PRODUCT_NOT_FOUND_OR_NOT_ACTIVE'


def test_populate_builds_ascending_bid_histories(engine, session):
    populate(engine, products=6)

    products = session.exec(select(Product)).all()
    assert len(products) == 6
    bids = session.exec(select(Bid)).all()
    assert bids
    for product in products:
        amounts = [b.amount for b in bids if b.product_id == product.id]
        assert amounts == sorted(amounts)
        if amounts:
            assert product.price == amounts[-1]

    # a second run leaves the data alone
    populate(engine, products=6)
    assert len(session.exec(select(Product)).all()) == 6


def test_malformed_fields_keep_socket_alive(client, product):
    with client.websocket_connect(f'/products/{product.id}/ws') as websocket:
        websocket.receive_json()
        websocket.send_json({'bid': 150, 'bidder_name': 5})
        assert websocket.receive_json()['code'] == 'INVALID_MESSAGE'
        websocket.send_json({'bid': 150, 'bidder_name': 'carol', 'buyer_id': [1]})
        assert websocket.receive_json()['code'] == 'INVALID_MESSAGE'
        websocket.send_json({'bid': 150, 'bidder_name': 'carol', 'buyer_id': True})
        assert websocket.receive_json()['code'] == 'INVALID_MESSAGE'

        websocket.send_json({'bid': 150, 'bidder_name': 'carol'})
        assert websocket.receive_json()['new_price'] == 150

    assert product.id not in manager.auction_connections
