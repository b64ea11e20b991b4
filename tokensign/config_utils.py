"""
Populate configuration dataclasses from user-provided dictionaries, as read
from the YAML configuration file.

Keys are written with hyphens in the file (``bytes-reserved``) and mapped to
the underscored field names of the dataclass.
"""

import dataclasses

__all__ = [
    'ConfigurationError', 'ConfigurableMixin', 'check_config_keys',
    'process_rgb',
]


class ConfigurationError(ValueError):
    """Signal configuration errors."""
    pass


@dataclasses.dataclass(frozen=True)
class ConfigurableMixin:
    """
    Mixin for configuration dataclasses whose fields all have defaults.
    """

    @classmethod
    def process_entries(cls, config_dict):
        """
        Hook to check values in the (underscored) configuration dictionary,
        or to replace them with richer objects before the class is
        instantiated.

        Subclasses that override this method should call
        ``super().process_entries()``.

        :raises ConfigurationError:
            when there is a problem processing a relevant entry.
        """
        pass

    @classmethod
    def from_config(cls, config_dict):
        """
        Instantiate the class from a configuration dictionary.

        :raises ConfigurationError:
            on unknown keys, or values rejected by :meth:`process_entries`.
        """
        check_config_keys(
            cls.__name__, [f.name for f in dataclasses.fields(cls)],
            config_dict
        )
        config_dict = {
            key.replace('-', '_'): v for key, v in config_dict.items()
        }
        cls.process_entries(config_dict)
        try:
            return cls(**config_dict)
        except TypeError as e:  # pragma: nocover
            raise ConfigurationError(e)


def check_config_keys(config_name, expected_keys, config_dict):
    if not isinstance(config_dict, dict):
        raise ConfigurationError(
            f"{config_name} requires a dictionary to initialise."
        )
    expected = {key.replace('_', '-') for key in expected_keys}
    unexpected_keys = {
        key.replace('_', '-') for key in config_dict
    } - expected
    if unexpected_keys:
        raise ConfigurationError(
            f"Unexpected {'key' if len(unexpected_keys) == 1 else 'keys'} "
            f"in configuration for {config_name}: "
            f"{', '.join(sorted(unexpected_keys))}."
        )


def process_rgb(value, param_name):
    """
    Parse a colour given as a list of three numbers between 0 and 1,
    or as a ``#rrggbb`` string.
    """
    if isinstance(value, str) and len(value) == 7 and value[0] == '#':
        try:
            return tuple(int(value[i:i + 2], 16) / 255 for i in (1, 3, 5))
        except ValueError:
            pass
    elif isinstance(value, (list, tuple)) and len(value) == 3:
        try:
            rgb = tuple(float(x) for x in value)
        except (TypeError, ValueError):
            rgb = None
        if rgb is not None and all(0 <= x <= 1 for x in rgb):
            return rgb
    raise ConfigurationError(
        f"'{param_name}' must be a list of three numbers between 0 and 1, "
        f"or a string of the form '#rrggbb'."
    )
