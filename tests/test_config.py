import pytest

from app.config import BYTES_IN_GB, load_settings, parse_tariffs


def _tariff_env(name: str, **extra: str) -> dict[str, str]:
    env = {
        f'TARIFF_{name}_ENABLED': 'true',
        f'TARIFF_{name}_DEVICES': '3',
        f'TARIFF_{name}_PRICE_1': '199',
        f'TARIFF_{name}_PRICE_3': '549',
        f'TARIFF_{name}_PRICE_6': '999',
        f'TARIFF_{name}_PRICE_12': '1799',
    }
    env.update(extra)
    return env


def test_parse_tariffs_reads_enabled_tariffs_with_stars_fallback():
    env = _tariff_env('BASE', TARIFF_BASE_STARS_PRICE_1='150', TARIFF_BASE_TRIBUTE_NAME='Base plan')

    (tariff,) = parse_tariffs(env)

    assert tariff.name == 'BASE'
    assert tariff.devices == 3
    assert tariff.price_for_months(3) == 549
    assert tariff.price_for_months(1, stars=True) == 150
    # stars price falls back to the regular price
    assert tariff.price_for_months(12, stars=True) == 1799
    assert tariff.tribute_name == 'Base plan'


def test_parse_tariffs_skips_disabled_and_incomplete():
    env = {
        **_tariff_env('OFF', TARIFF_OFF_ENABLED='false'),
        **_tariff_env('BROKEN', TARIFF_BROKEN_PRICE_6=''),
        **_tariff_env('PRO', TARIFF_PRO_DEVICES='5'),
        **_tariff_env('START', TARIFF_START_DEVICES='1'),
    }

    tariffs = parse_tariffs(env)

    assert [tariff.name for tariff in tariffs] == ['START', 'PRO']


def test_load_settings_coerces_types():
    settings = load_settings(
        {
            'DAYS_IN_MONTH': '31',
            'TRAFFIC_LIMIT_GB': '100',
            'RECURRING_PAYMENTS_ENABLED': 'true',
            'WINBACK_ENABLED': 'yes',
            'SQUAD_UUIDS': 'a, b,,c',
            'REMNAWAVE_WEBHOOK_SECRET': 'secret',
            **_tariff_env('BASE'),
        }
    )

    assert settings.DAYS_IN_MONTH == 31
    assert settings.traffic_limit_bytes == 100 * BYTES_IN_GB
    assert settings.RECURRING_PAYMENTS_ENABLED is True
    # only the literal "true" enables a flag
    assert settings.WINBACK_ENABLED is False
    assert settings.SQUAD_UUIDS == ('a', 'b', 'c')
    assert settings.REMNAWAVE_WEBHOOK_SECRET == 'secret'
    assert settings.get_tariff_by_name('BASE') is not None
    assert settings.get_tariff_by_name('MISSING') is None


def test_load_settings_rejects_non_integer_values():
    with pytest.raises(ValueError, match='DAYS_IN_MONTH'):
        load_settings({'DAYS_IN_MONTH': 'thirty'})


def test_provider_flags_require_credentials():
    settings = load_settings({'YOOKASSA_ENABLED': 'true', 'CRYPTO_PAY_ENABLED': 'true', 'CRYPTO_PAY_TOKEN': 'tok'})

    assert settings.is_yookassa_enabled() is False
    assert settings.is_crypto_pay_enabled() is True
