"""
Business-logic unit tests for OpenSaludOcupacional.

These tests exercise sohlib modules directly (without the HTTP layer).
"""
import pytest

from sohlib.duration import check_date, check_time, compute_hours, try_compute_hours
from sohlib.errors import ValidationError
from sohlib.lookup import NOT_FOUND, apply_lookup, resolve
from sohlib.permissions import allow, has_permission
from sohlib.record_filter import MissingDatePolicy, filter_records, in_date_range, matches
from sohlib.schemas import (
    CATALOGS, ENFERMERIA, NOVEDADES, SCREENS, get_catalog, get_screen,
)


# ─────────────────────────────────────────────────────────────
# Duration
# ─────────────────────────────────────────────────────────────

class TestComputeHours:
    def test_same_day(self):
        assert compute_hours('2024-01-01', '08:00', '2024-01-01', '10:30') == 2.5

    def test_across_midnight(self):
        assert compute_hours('2024-01-01', '22:00', '2024-01-02', '06:00') == 8.0

    def test_end_before_start_is_zero(self):
        assert compute_hours('2024-01-02', '09:00', '2024-01-01', '09:00') == 0.0

    def test_equal_instants(self):
        assert compute_hours('2024-05-01', '12:00', '2024-05-01', '12:00') == 0.0

    def test_seconds_accepted(self):
        assert compute_hours('2024-01-01', '08:00:00', '2024-01-01', '08:45:00') == 0.75

    def test_fraction_kept(self):
        hours = compute_hours('2024-01-01', '08:00', '2024-01-01', '08:20')
        assert hours == pytest.approx(1 / 3)

    @pytest.mark.parametrize('args', [
        ('', '08:00', '2024-01-01', '10:00'),
        ('2024-01-01', '', '2024-01-01', '10:00'),
        ('2024-13-01', '08:00', '2024-01-01', '10:00'),
        ('2024-01-01', '8h', '2024-01-01', '10:00'),
    ])
    def test_invalid_input_raises(self, args):
        with pytest.raises(ValueError):
            compute_hours(*args)

    def test_try_compute_returns_none(self):
        assert try_compute_hours('2024-01-01', '', '2024-01-01', '10:00') is None
        assert try_compute_hours('2024-01-01', '08:00', '2024-01-01', '09:00') == 1.0

    @pytest.mark.parametrize('end_time', ['07:00', '08:00', '08:01', '09:30', '23:59'])
    def test_later_end_never_lowers_hours(self, end_time):
        earlier = compute_hours('2024-01-01', '08:00', '2024-01-01', end_time)
        for later_date, later_time in [('2024-01-01', '23:59'), ('2024-01-02', '00:00'),
                                       ('2024-01-03', end_time)]:
            assert compute_hours('2024-01-01', '08:00', later_date, later_time) >= earlier

    def test_hours_grow_with_end(self):
        ends = ['2024-01-01T07:00', '2024-01-01T08:00', '2024-01-01T12:15',
                '2024-01-02T08:00', '2024-02-01T08:00']
        hours = [compute_hours('2024-01-01', '08:00', *e.split('T')) for e in ends]
        assert hours == sorted(hours)


class TestFormatChecks:
    @pytest.mark.parametrize('value', ['2024-02-29', '1999-12-31'])
    def test_valid_dates(self, value):
        assert check_date(value) == value

    @pytest.mark.parametrize('value', ['2024-02-30', '07/03/2024', '2024-3-7', '', None, 20240307])
    def test_invalid_dates(self, value):
        with pytest.raises(ValueError):
            check_date(value)

    @pytest.mark.parametrize('value', ['00:00', '23:59', '08:15:30'])
    def test_valid_times(self, value):
        assert check_time(value) == value

    @pytest.mark.parametrize('value', ['25:00', '12:60', '8:00', '9am', '', None])
    def test_invalid_times(self, value):
        with pytest.raises(ValueError):
            check_time(value)


# ─────────────────────────────────────────────────────────────
# Record filter
# ─────────────────────────────────────────────────────────────

_ROWS = [
    {'id': 'a', 'nombre': 'Ana Pérez', 'cedula': '111', 'fecha': '2024-01-10'},
    {'id': 'b', 'nombre': 'Luis Gómez', 'cedula': '222', 'fecha': '2024-02-15'},
    {'id': 'c', 'nombre': 'ana maría', 'cedula': None, 'fecha': '2024-03-01'},
    {'id': 'd', 'nombre': 'Sin Fecha', 'cedula': '444', 'fecha': None},
]
_FIELDS = ('nombre', 'cedula')


def _ids(rows):
    return [r['id'] for r in rows]


class TestRecordFilter:
    def test_no_criteria_returns_input(self):
        assert filter_records(_ROWS, '', fields=_FIELDS, date_field='fecha') == _ROWS

    def test_case_insensitive_substring(self):
        assert _ids(filter_records(_ROWS, 'ANA', fields=_FIELDS)) == ['a', 'c']

    def test_or_across_fields(self):
        assert _ids(filter_records(_ROWS, '22', fields=_FIELDS)) == ['b']

    def test_none_field_value_treated_as_empty(self):
        assert matches(_ROWS[2], '111', _FIELDS) is False

    def test_inclusive_bounds(self):
        rows = filter_records(_ROWS, date_from='2024-01-10', date_to='2024-02-15',
                              fields=_FIELDS, date_field='fecha')
        assert _ids(rows) == ['a', 'b']

    def test_only_lower_bound(self):
        rows = filter_records(_ROWS, date_from='2024-02-01', fields=_FIELDS, date_field='fecha')
        assert _ids(rows) == ['b', 'c']

    def test_missing_date_excluded_by_default(self):
        rows = filter_records(_ROWS, date_to='2030-01-01', fields=_FIELDS, date_field='fecha')
        assert 'd' not in _ids(rows)

    def test_missing_date_included_by_policy(self):
        rows = filter_records(_ROWS, date_to='2030-01-01', fields=_FIELDS, date_field='fecha',
                              missing=MissingDatePolicy.INCLUDE)
        assert 'd' in _ids(rows)

    def test_missing_date_kept_without_bounds(self):
        assert in_date_range(_ROWS[3], 'fecha') is True

    def test_timestamp_compared_on_date_part(self):
        row = {'fecha': '2024-01-31T23:59:00'}
        assert in_date_range(row, 'fecha', '2024-01-31', '2024-01-31') is True

    def test_query_and_range_combined(self):
        rows = filter_records(_ROWS, 'ana', '2024-02-01', None, fields=_FIELDS, date_field='fecha')
        assert _ids(rows) == ['c']

    def test_order_preserved(self):
        reversed_rows = list(reversed(_ROWS))
        assert _ids(filter_records(reversed_rows, 'a', fields=_FIELDS)) == ['d', 'c', 'a']

    @pytest.mark.parametrize('query, date_from, date_to', [
        ('', None, None),
        ('ana', None, None),
        ('', '2024-01-15', '2024-03-01'),
        ('a', '2024-01-01', None),
        ('zzz', None, '2024-12-31'),
    ])
    def test_filter_is_idempotent(self, query, date_from, date_to):
        for policy in MissingDatePolicy:
            kw = dict(fields=_FIELDS, date_field='fecha', missing=policy)
            once = filter_records(_ROWS, query, date_from, date_to, **kw)
            assert filter_records(once, query, date_from, date_to, **kw) == once


# ─────────────────────────────────────────────────────────────
# Permission gate
# ─────────────────────────────────────────────────────────────

class TestPermissionGate:
    @pytest.mark.parametrize('resource', list(SCREENS) + list(CATALOGS))
    @pytest.mark.parametrize('action', ['create', 'update', 'delete'])
    def test_admin_allowed_everything(self, resource, action):
        assert allow('Admin', resource, action) is True

    @pytest.mark.parametrize('resource', list(SCREENS))
    def test_editor_creates_and_updates_records(self, resource):
        assert allow('Editor', resource, 'create') is True
        assert allow('Editor', resource, 'update') is True
        assert allow('Editor', resource, 'delete') is False

    def test_editor_cannot_touch_catalogs(self):
        assert allow('Editor', 'tipos_at', 'create') is False

    @pytest.mark.parametrize('action', ['create', 'update', 'delete'])
    def test_lector_denied(self, action):
        assert allow('Lector', 'novedades', action) is False

    def test_unknown_role_and_action_denied(self):
        assert allow('Invitado', 'novedades', 'create') is False
        assert allow('Admin', 'novedades', 'read') is False
        assert allow('', 'novedades', 'create') is False

    def test_has_permission_uses_user_role(self):
        assert has_permission({'role': 'Editor'}, 'enfermeria', 'update') is True
        assert has_permission(None, 'enfermeria', 'update') is False


# ─────────────────────────────────────────────────────────────
# Staff directory lookup
# ─────────────────────────────────────────────────────────────

_DIRECTORY = [
    {'cedula': '100', 'nombre': 'Ana', 'cargo': 'Docente', 'dependencia': 'Rectoría', 'activo': True},
    {'cedula': '200', 'nombre': 'Inactivo', 'cargo': 'X', 'dependencia': 'Y', 'activo': False},
    {'cedula': '300', 'nombre': 'Sin cargo', 'cargo': None, 'dependencia': 'Bienestar'},
]


class TestLookup:
    def test_exact_match(self):
        assert resolve(_DIRECTORY, '100') == {
            'nombre': 'Ana', 'cargo': 'Docente', 'dependencia': 'Rectoría'}

    def test_no_partial_match(self):
        assert resolve(_DIRECTORY, '10') is NOT_FOUND

    def test_inactive_entry_ignored(self):
        assert resolve(_DIRECTORY, '200') is NOT_FOUND

    def test_empty_key(self):
        assert resolve(_DIRECTORY, '') is NOT_FOUND
        assert not NOT_FOUND

    def test_missing_value_becomes_empty_string(self):
        assert resolve(_DIRECTORY, '300')['cargo'] == ''

    def test_apply_lookup_fills_fields(self):
        draft = {'cedula': '', 'nombre': '', 'cargo': '', 'dependencia': '', 'fecha': '2024-01-01'}
        updated = apply_lookup(draft, _DIRECTORY, '100')
        assert updated['nombre'] == 'Ana'
        assert updated['fecha'] == '2024-01-01'
        assert draft['nombre'] == ''

    def test_apply_lookup_keeps_typed_values_on_miss(self):
        draft = {'cedula': '', 'nombre': 'Escrito a mano', 'cargo': '', 'dependencia': ''}
        updated = apply_lookup(draft, _DIRECTORY, '999')
        assert updated['cedula'] == '999'
        assert updated['nombre'] == 'Escrito a mano'


# ─────────────────────────────────────────────────────────────
# Screen and catalog schemas
# ─────────────────────────────────────────────────────────────

def _catalogs(**entries):
    return {kind: [{'nombre': n, 'activo': active} for n, active in values]
            for kind, values in entries.items()}


class TestScreenSchemas:
    def test_empty_draft_defaults(self):
        draft = NOVEDADES.empty_draft()
        assert draft['tipo_planta'] == 'Docente'
        assert draft['tipo_novedad'] == 'Permiso'
        assert draft['horas_ausencia'] == 0.0
        assert ENFERMERIA.empty_draft()['salida'] == 'No'

    def test_missing_required_lists_fields(self):
        draft = ENFERMERIA.empty_draft()
        missing = ENFERMERIA.missing_required(draft)
        assert 'cedula' in missing
        assert 'observaciones' not in missing
        assert 'salida' not in missing

    def test_computed_field_not_required(self):
        assert 'horas_ausencia' not in NOVEDADES.missing_required(NOVEDADES.empty_draft())

    def test_whitespace_counts_as_empty(self):
        draft = {**ENFERMERIA.empty_draft(), 'cedula': '   '}
        assert 'cedula' in ENFERMERIA.missing_required(draft)

    def test_validate_raises_with_fields(self):
        with pytest.raises(ValidationError) as exc:
            ENFERMERIA.validate(ENFERMERIA.empty_draft())
        assert 'cedula' in exc.value.fields

    def test_validate_rejects_bad_choice(self):
        draft = {**_full_enfermeria(), 'salida': 'Tal vez'}
        with pytest.raises(ValidationError):
            ENFERMERIA.validate(draft)

    def test_validate_rejects_inactive_catalog_value(self):
        catalogs = _catalogs(sintomas=[('Cefalea', False)], antecedentes_salud=[('Ninguno', True)])
        with pytest.raises(ValidationError) as exc:
            ENFERMERIA.validate(_full_enfermeria(), catalogs)
        assert exc.value.fields == ['sintomas']

    def test_validate_keeps_unchanged_inactive_value_on_update(self):
        catalogs = _catalogs(sintomas=[('Cefalea', False)], antecedentes_salud=[('Ninguno', True)])
        record = _full_enfermeria()
        ENFERMERIA.validate(record, catalogs, previous=record)

    def test_validate_rejects_malformed_date(self):
        with pytest.raises(ValidationError) as exc:
            ENFERMERIA.validate({**_full_enfermeria(), 'fecha': '01-04-2024'})
        assert exc.value.fields == ['fecha']

    def test_validate_rejects_uncomputable_hours(self):
        draft = {**NOVEDADES.empty_draft(), 'cedula': '1', 'nombre': 'X', 'dependencia': 'Bienestar',
                 'fecha_inicio': '2024-03-07', 'hora_inicio': '08:00',
                 'fecha_fin': '2024-03-07', 'hora_fin': '24:00'}
        with pytest.raises(ValidationError) as exc:
            NOVEDADES.validate(draft)
        assert exc.value.fields == ['hora_fin']

    def test_payload_has_no_audit_fields(self):
        record = {**_full_enfermeria(), 'id': 'x', 'created_at': 'now', 'created_by': 1}
        payload = ENFERMERIA.payload(ENFERMERIA.draft_from(record))
        assert 'id' not in payload and 'created_by' not in payload

    def test_describe(self):
        desc = NOVEDADES.describe()
        assert desc['date_field'] == 'fecha_inicio'
        assert desc['directory'] is None
        assert any(f['computed'] for f in desc['fields'])

    def test_load_tables_include_directory(self):
        assert ENFERMERIA.load_tables[-1] == 'funcionarios'
        assert 'funcionarios' not in NOVEDADES.load_tables

    def test_unknown_resource(self):
        with pytest.raises(ValueError):
            get_screen('vacaciones')


class TestCatalogSchemas:
    def test_variants(self):
        assert get_catalog('tipos_at').variant == 'simple'
        assert get_catalog('diagnosticos').variant == 'coded'
        assert get_catalog('funcionarios').variant == 'directory'

    def test_payload_keeps_variant_fields_only(self):
        schema = get_catalog('tipos_at')
        assert schema.payload({'nombre': 'Caída', 'codigo': 'X', 'activo': 1}) == {
            'nombre': 'Caída', 'activo': True}

    def test_coded_requires_codigo(self):
        with pytest.raises(ValidationError) as exc:
            get_catalog('diagnosticos').validate({'nombre': 'Cefalea'})
        assert exc.value.fields == ['codigo']

    def test_empty_draft_is_active(self):
        assert get_catalog('funcionarios').empty_draft() == {
            'cedula': '', 'nombre': '', 'cargo': '', 'dependencia': '', 'activo': True}

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            get_catalog('colores')


def _full_enfermeria():
    return {
        'cedula': '1', 'nombre': 'N', 'cargo': 'C', 'dependencia': 'D',
        'sintomas': 'Cefalea', 'antecedentes_salud': 'Ninguno', 'salida': 'No',
        'observaciones': '', 'fecha': '2024-01-01',
    }
