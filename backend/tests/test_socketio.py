from datetime import timedelta


def test_socket_connect_and_join(sio_client):
    # Ensure we are connected to /ws
    if not sio_client.is_connected('/ws'):
        sio_client.connect(namespace='/ws')
    assert sio_client.is_connected('/ws')

    # Join a room and expect a joined ack
    sio_client.emit('join_auction', {'auction_id': 1}, namespace='/ws')
    received = sio_client.get_received('/ws')
    assert any(pkt['name'] == 'joined' and pkt['args'][0]['room'] == 'auction:1' for pkt in received)


def test_join_without_id_reports_error(sio_client):
    sio_client.get_received('/ws')
    sio_client.emit('join_territory', {}, namespace='/ws')
    received = sio_client.get_received('/ws')
    assert any(pkt['name'] == 'error' for pkt in received)


def test_bid_pushes_auction_update(client, sio_client, services, clock, make_territory):
    make_territory('T1')
    auction = services.auctions.open_auction('T1', min_bid='10', end_time=clock.now() + timedelta(hours=1))
    auction_id = auction.id

    sio_client.emit('join_auction', {'auction_id': auction_id}, namespace='/ws')
    sio_client.emit('join_territory', {'territory_id': 'T1'}, namespace='/ws')
    sio_client.get_received('/ws')  # flush

    res = client.post(f'/api/auctions/{auction_id}/bids', json={'bidderId': 'bidder1', 'amount': 10})
    assert res.status_code == 201

    events = sio_client.get_received('/ws')
    updates = [e['args'][0] for e in events if e['name'] == 'auction_update']
    assert updates and updates[-1]['currentBid'] == 10.0
    assert updates[-1]['minNextBid'] == 11.0
    assert any(e['name'] == 'territory_update' for e in events)


def test_ping_pong(sio_client):
    sio_client.get_received('/ws')
    sio_client.emit('ping', {'n': 1}, namespace='/ws')
    received = sio_client.get_received('/ws')
    assert any(pkt['name'] == 'pong' and pkt['args'][0] == {'n': 1} for pkt in received)
