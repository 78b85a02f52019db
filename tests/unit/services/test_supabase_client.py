"""
Unit tests for the Supabase DAO.

HTTP traffic is served by httpx.MockTransport; no network access is needed.
"""

import httpx
import pytest
from unittest.mock import patch

from services.supabase_client import (
    BackendConfigError,
    SupabaseConfig,
    SupabaseDAO,
    format_filter_value,
    parse_content_range_total,
    get_dao,
    reset_dao,
)


@pytest.mark.unit
class TestSupabaseConfig:

    def test_from_env(self):
        with patch.dict('os.environ', {
            'SUPABASE_URL': 'https://abc.supabase.co',
            'SUPABASE_ANON_KEY': 'anon',
            'AZM_BACKEND_TIMEOUT': '5',
            'AZM_BACKEND_PAGE_SIZE': '250',
        }, clear=True):
            config = SupabaseConfig.from_env()

        assert config.url == 'https://abc.supabase.co'
        assert config.api_key == 'anon'
        assert config.timeout_seconds == 5.0
        assert config.page_size == 250
        assert config.schema == 'public'

    def test_service_role_key_preferred(self):
        with patch.dict('os.environ', {
            'SUPABASE_URL': 'https://abc.supabase.co',
            'SUPABASE_SERVICE_ROLE_KEY': 'service',
            'SUPABASE_ANON_KEY': 'anon',
        }, clear=True):
            assert SupabaseConfig.from_env().api_key == 'service'

    def test_missing_configuration(self):
        with pytest.raises(BackendConfigError) as exc_info:
            SupabaseConfig().validate()
        assert 'SUPABASE_URL' in str(exc_info.value)
        assert 'SUPABASE_SERVICE_ROLE_KEY' in str(exc_info.value)

    def test_dao_refuses_incomplete_configuration(self):
        with pytest.raises(BackendConfigError):
            SupabaseDAO(config=SupabaseConfig(url='https://abc.supabase.co'))


@pytest.mark.unit
class TestFilterFormatting:

    @pytest.mark.parametrize("operator,value,expected", [
        ('eq', 'tenant-1', 'eq.tenant-1'),
        ('gte', '2026-10-01', 'gte.2026-10-01'),
        ('eq', False, 'eq.false'),
        ('is', None, 'is.null'),
        ('ilike', '*sql*', 'ilike.*sql*'),
        ('in', ['a', 'b'], 'in.(a,b)'),
        ('in', ['/subscriptions/x,y'], 'in.("/subscriptions/x,y")'),
    ])
    def test_values(self, operator, value, expected):
        assert format_filter_value(operator, value) == expected


@pytest.mark.unit
class TestSelect:
    """Test REST reads against the recording backend."""

    def test_headers_and_params(self, mock_dao, backend):
        backend.tables['azure_resources'] = [{"id": "r-1"}, {"id": "r-2"}]

        rows = mock_dao.select(
            'azure_resources',
            columns='id, name',
            filters=[('azure_tenant_id', 'eq', 'tenant-1'), ('id', 'in', ['r-1', 'r-2'])],
            or_filters=[('resource_type', 'ilike', '*sql*'), ('resource_type', 'ilike', '*database*')],
            order='name.asc',
            limit=1,
        )

        assert rows == [{"id": "r-1"}]
        request = backend.requests[0]
        assert request.method == 'GET'
        assert request.url.path == '/rest/v1/azure_resources'
        assert request.headers['apikey'] == 'test-service-role-key'
        assert request.headers['Authorization'] == 'Bearer test-service-role-key'
        assert request.headers['Accept-Profile'] == 'public'
        params = request.url.params
        assert params['select'] == 'id, name'
        assert params['azure_tenant_id'] == 'eq.tenant-1'
        assert params['id'] == 'in.(r-1,r-2)'
        assert params['or'] == '(resource_type.ilike.*sql*,resource_type.ilike.*database*)'
        assert params['order'] == 'name.asc'
        assert params['limit'] == '1'

    def test_repeated_column_filters_are_kept(self, mock_dao, backend):
        mock_dao.select('azure_metrics', filters=[('timestamp_utc', 'gte', 'a'), ('timestamp_utc', 'lt', 'b')])
        assert backend.requests[0].url.params.get_list('timestamp_utc') == ['gte.a', 'lt.b']

    def test_unsupported_operator(self, mock_dao):
        with pytest.raises(ValueError):
            mock_dao.select('azure_resources', filters=[('id', 'between', (1, 2))])

    def test_http_error_is_raised(self, mock_dao, backend):
        backend.status_overrides['/rest/v1/azure_resources'] = httpx.Response(
            401, json={"message": "Invalid API key"}
        )
        with pytest.raises(httpx.HTTPStatusError):
            mock_dao.select('azure_resources')


@pytest.mark.unit
class TestSelectAll:
    """Test Range-header paging (page_size=2, max_rows=10 in the fixture config)."""

    def test_pages_until_reported_total(self, mock_dao, backend):
        backend.tables['azure_metrics'] = [{"n": i} for i in range(5)]

        rows = mock_dao.select_all('azure_metrics', order='timestamp_utc.desc')

        assert [r["n"] for r in rows] == [0, 1, 2, 3, 4]
        assert [r.headers['Range'] for r in backend.requests] == ['0-1', '2-3', '4-5']
        assert all(r.headers['Range-Unit'] == 'items' for r in backend.requests)
        assert backend.requests[0].headers['Prefer'] == 'count=exact'
        assert 'Prefer' not in backend.requests[1].headers

    def test_exact_multiple_stops_at_total(self, mock_dao, backend):
        backend.tables['azure_metrics'] = [{"n": i} for i in range(4)]
        rows = mock_dao.select_all('azure_metrics')
        assert len(rows) == 4
        assert len(backend.requests) == 2

    def test_unknown_total_stops_on_empty_page(self, mock_dao, backend):
        backend.tables['azure_metrics'] = [{"n": i} for i in range(4)]
        backend.report_count = False

        rows = mock_dao.select_all('azure_metrics')

        assert len(rows) == 4
        assert [r.headers['Range'] for r in backend.requests] == ['0-1', '2-3', '4-5']

    @pytest.mark.parametrize("report_count", [True, False])
    def test_server_cap_below_page_size(self, supabase_config, backend, report_count):
        backend.tables['azure_metrics'] = [{"n": i} for i in range(7)]
        backend.max_rows_per_response = 2
        backend.report_count = report_count
        supabase_config.page_size = 5

        with SupabaseDAO(config=supabase_config, transport=httpx.MockTransport(backend.handler)) as dao:
            rows = dao.select_all('azure_metrics')

        assert [r["n"] for r in rows] == list(range(7))
        assert backend.requests[1].headers['Range'] == '2-6'

    def test_empty_table(self, mock_dao, backend):
        assert mock_dao.select_all('azure_metrics') == []
        assert len(backend.requests) == 1

    def test_row_cap(self, mock_dao, backend, caplog):
        backend.tables['azure_metrics'] = [{"n": i} for i in range(25)]

        with caplog.at_level('WARNING'):
            rows = mock_dao.select_all('azure_metrics')

        assert len(rows) == 10
        assert len(backend.requests) == 5
        assert 'Row cap of 10 reached' in caplog.text

    def test_no_warning_when_total_equals_cap(self, mock_dao, backend, caplog):
        backend.tables['azure_metrics'] = [{"n": i} for i in range(10)]

        with caplog.at_level('WARNING'):
            rows = mock_dao.select_all('azure_metrics')

        assert len(rows) == 10
        assert 'Row cap' not in caplog.text


@pytest.mark.unit
class TestContentRange:

    @pytest.mark.parametrize("header,expected", [
        ("0-999/4213", 4213),
        ("*/0", 0),
        ("0-1/*", None),
        (None, None),
        ("garbage", None),
    ])
    def test_parse_total(self, header, expected):
        assert parse_content_range_total(header) == expected


@pytest.mark.unit
class TestHealthCheck:

    def test_reachable(self, mock_dao, backend):
        backend.tables['azure_resources'] = [{"id": "r-1"}]
        result = mock_dao.health_check()
        assert result["status"] == "success"
        assert result["data"]["reachable"] is True
        assert backend.requests[0].url.params['limit'] == '1'

    def test_status_error(self, mock_dao, backend):
        backend.status_overrides['/rest/v1/azure_sql_wait_stats'] = httpx.Response(404, json={})
        result = mock_dao.health_check('azure_sql_wait_stats')
        assert result["status"] == "error"
        assert result["error_code"] == "404"
        assert result["data"]["reachable"] is True

    def test_unreachable(self, supabase_config):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        with SupabaseDAO(config=supabase_config, transport=httpx.MockTransport(refuse)) as dao:
            result = dao.health_check()

        assert result["status"] == "error"
        assert result["error_code"] == "ConnectError"
        assert result["data"]["reachable"] is False


@pytest.mark.unit
class TestDefaultDao:

    def test_singleton_from_environment(self, supabase_env):
        dao = get_dao()
        assert get_dao() is dao
        assert dao.base_url == 'https://test-project.supabase.co'
        reset_dao()
        assert get_dao() is not dao

    def test_unconfigured_environment(self):
        with patch.dict('os.environ', {}, clear=True):
            with pytest.raises(BackendConfigError):
                get_dao()
