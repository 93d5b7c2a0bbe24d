import asyncio

import pytest

from trakke.app import TrakkeState, create_app
from trakke.categories import Category
from trakke.models import POI, ViewportBounds
from trakke.pipeline import AggregationPipeline
from tests.fakes import FakeAdapter, RecordingSleep, node

VIEWPORT = {'north': '60', 'south': '59', 'east': '11', 'west': '10'}


def make_app(responses, **kwargs):
    fake = FakeAdapter(responses)

    def factory(state):
        return AggregationPipeline(adapters=[fake], admin_store=state.admin_store, sleep=RecordingSleep())

    app = create_app(pipeline_factory=factory, **kwargs)
    return app, fake


@pytest.mark.asyncio
async def test_get_pois_returns_published_state():
    app, fake = make_app({'camping': [
        node(7, 59.5, 10.5, tourism='camp_site', name='Sandvika Camping'),
        node(8, 59.6, 10.6, amenity='toilets'),
    ]})
    async with app.test_app() as test_app:
        async with test_app.test_client() as client:
            resp = await client.get('/api/pois', query_string={**VIEWPORT, 'categories': 'camping_site,nope'})
            assert resp.status_code == 200
            data = await resp.get_json()

    assert data['loading'] is False
    assert data['error'] is None
    assert [p['id'] for p in data['pois']] == ['osm:camping_site:node/7']
    poi = data['pois'][0]
    assert poi['name'] == 'Sandvika Camping'
    assert poi['category'] == 'camping_site'
    assert (poi['lat'], poi['lng']) == (59.5, 10.5)
    assert data['report']['from_cache'] is False
    assert data['report']['network_calls'] == 1
    assert len(fake.calls) == 1


@pytest.mark.asyncio
async def test_second_request_is_served_from_cache():
    app, fake = make_app({'camping': [node(7, 59.5, 10.5, tourism='camp_site')]})
    async with app.test_app() as test_app:
        async with test_app.test_client() as client:
            await client.get('/api/pois', query_string={**VIEWPORT, 'categories': 'camping_site'})
            resp = await client.get('/api/pois', query_string={**VIEWPORT, 'categories': 'camping_site'})
            data = await resp.get_json()
    assert data['report']['from_cache'] is True
    assert len(data['pois']) == 1
    assert len(fake.calls) == 1


@pytest.mark.asyncio
async def test_views_have_separate_pipelines():
    app, fake = make_app({'camping': [node(7, 59.5, 10.5, tourism='camp_site')]})
    async with app.test_app() as test_app:
        async with test_app.test_client() as client:
            for view in ('left', 'right'):
                await client.get('/api/pois', query_string={**VIEWPORT, 'categories': 'camping_site', 'view': view})
            health = await (await client.get('/healthz')).get_json()
    assert len(fake.calls) == 2
    assert health['views'] == 2


@pytest.mark.asyncio
async def test_admin_pois_are_merged():
    app, _ = make_app({'camping': []})
    app.extensions['trakke'].admin_store.add(POI(
        id='admin:camping_site:1', name='Leir', description='Lagt inn manuelt',
        category=Category.CAMPING_SITE, lat=59.5, lng=10.5, source='admin',
    ))
    async with app.test_app() as test_app:
        async with test_app.test_client() as client:
            resp = await client.get('/api/pois', query_string={**VIEWPORT, 'categories': 'camping_site'})
            data = await resp.get_json()
    assert [p['source'] for p in data['pois']] == ['admin']


@pytest.mark.asyncio
@pytest.mark.parametrize('params', [
    {'north': '59', 'south': '60', 'east': '11', 'west': '10'},
    {'north': '60', 'south': '59', 'east': '11'},
    {'north': 'abc', 'south': '59', 'east': '11', 'west': '10'},
])
async def test_invalid_bounds_are_rejected(params):
    app, fake = make_app({})
    async with app.test_app() as test_app:
        async with test_app.test_client() as client:
            resp = await client.get('/api/pois', query_string={**params, 'categories': 'camping_site'})
            assert resp.status_code == 400
            assert 'error' in await resp.get_json()
    assert fake.calls == []


@pytest.mark.asyncio
async def test_empty_categories_publish_nothing():
    app, fake = make_app({})
    async with app.test_app() as test_app:
        async with test_app.test_client() as client:
            resp = await client.get('/api/pois', query_string=VIEWPORT)
            data = await resp.get_json()
    assert resp.status_code == 200
    assert data['pois'] == []
    assert 'report' not in data
    assert fake.calls == []


@pytest.mark.asyncio
async def test_in_flight_request_gets_202_and_cancel_discards_result():
    gate = asyncio.Event()

    async def blocked(query, bounds):
        await gate.wait()
        return [node(7, 59.5, 10.5, tourism='camp_site')]

    app, fake = make_app({'camping': blocked})
    async with app.test_app() as test_app:
        async with test_app.test_client() as client:
            query = {**VIEWPORT, 'categories': 'camping_site'}
            first = asyncio.ensure_future(client.get('/api/pois', query_string=query))
            for _ in range(200):
                if fake.calls:
                    break
                await asyncio.sleep(0)
            assert fake.calls

            busy = await client.get('/api/pois', query_string=query)
            assert busy.status_code == 202
            assert (await busy.get_json())['loading'] is True

            cancel = await client.post('/api/pois/cancel')
            assert (await cancel.get_json()) == {'view': 'default', 'cancelled': True}
            gate.set()

            resp = await first
            data = await resp.get_json()
            assert data['report']['cancelled'] is True
            assert data['pois'] == []
            assert data['loading'] is False
            assert len(app.extensions['trakke'].pipeline('default').cache) == 0


@pytest.mark.asyncio
async def test_cancel_unknown_view():
    app, _ = make_app({})
    async with app.test_app() as test_app:
        async with test_app.test_client() as client:
            resp = await client.post('/api/pois/cancel', query_string={'view': 'nowhere'})
            assert (await resp.get_json()) == {'view': 'nowhere', 'cancelled': False}


@pytest.mark.asyncio
async def test_categories_listing():
    app, _ = make_app({})
    async with app.test_app() as test_app:
        async with test_app.test_client() as client:
            data = await (await client.get('/api/categories')).get_json()
    listing = {c['id']: c for c in data['categories']}
    assert len(listing) == len(Category)
    assert listing['camping_site']['queries'] == 'camping'
    assert listing['viewpoints']['queries'] == 'outdoor_recreation,observation_towers'
    assert listing['emergency_shelters']['family'] == 'service_infrastructure'


@pytest.mark.asyncio
async def test_healthz():
    app, _ = make_app({})
    async with app.test_app() as test_app:
        async with test_app.test_client() as client:
            resp = await client.get('/healthz')
            data = await resp.get_json()
    assert data['app'] == 'ok'
    assert data['ready'] is True
    assert data['redis'] is False
    assert data['views'] == 0


def test_view_registry_drops_least_recently_used_view():
    created = []

    def factory(state):
        pipeline = AggregationPipeline(adapters=[FakeAdapter({})], sleep=RecordingSleep())
        created.append(pipeline)
        return pipeline

    state = TrakkeState(factory, max_views=2)
    a = state.pipeline('a')
    state.pipeline('b')
    assert state.pipeline('a') is a
    state.pipeline('c')

    assert len(state) == 2
    assert state.has_view('a') and state.has_view('c')
    assert not state.has_view('b')
    assert len(created) == 3


@pytest.mark.asyncio
async def test_client_supplied_views_are_bounded():
    app, fake = make_app({'camping': [node(7, 59.5, 10.5, tourism='camp_site')]}, max_views=3)
    async with app.test_app() as test_app:
        async with test_app.test_client() as client:
            for i in range(10):
                query = {**VIEWPORT, 'categories': 'camping_site', 'view': f'tab-{i}'}
                assert (await client.get('/api/pois', query_string=query)).status_code == 200
            health = await (await client.get('/healthz')).get_json()
    assert health['views'] == 3
    assert len(fake.calls) == 10
    assert not app.extensions['trakke'].has_view('tab-0')


@pytest.mark.asyncio
async def test_evicted_view_in_flight_is_cancelled():
    gate = asyncio.Event()

    async def blocked(query, bounds):
        await gate.wait()
        return [node(7, 59.5, 10.5, tourism='camp_site')]

    fake = FakeAdapter({'camping': blocked})
    state = TrakkeState(
        lambda s: AggregationPipeline(adapters=[fake], sleep=RecordingSleep()), max_views=1)
    old = state.pipeline('old')
    pending = asyncio.ensure_future(old.load_viewport(
        ViewportBounds(north=60, south=59, east=11, west=10), [Category.CAMPING_SITE]))
    for _ in range(200):
        if fake.calls:
            break
        await asyncio.sleep(0)
    assert old.in_flight

    state.pipeline('new')
    assert not old.in_flight
    gate.set()
    report = await pending
    assert report.cancelled is True
    assert old.state.pois == []
