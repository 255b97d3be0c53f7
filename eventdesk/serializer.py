import datetime
import decimal
import json
import uuid


class serializer(json.JSONEncoder):
    """
    JSONEncoder subclass which lets modules register serializers for types
    that the json module doesn't know about.  Call serializer.register()
    for new data types rather than instantiating this class directly.
    """

    _registry = {}
    _datetime_format = '%Y-%m-%dT%H:%M:%S%z'

    def default(self, o):
        if type(o) in self._registry:
            preprocessor = self._registry[type(o)]
        else:
            for klass, preprocessor in self._registry.items():
                if isinstance(o, klass):
                    break
            else:
                return json.JSONEncoder.default(self, o)

        return preprocessor(o)

    @classmethod
    def register(cls, type, preprocessor):
        """
        Associates a type with a preprocessor so that page handlers may
        return non-builtin JSON types.  For example, we already do the
        equivalent of

        >>> serializer.register(set, lambda s: sorted(list(s)))

        This method raises an exception if you try to register a
        preprocessor for a type which already has one.
        """
        assert type not in cls._registry, '{} already has a preprocessor defined'.format(type)
        cls._registry[type] = preprocessor


serializer.register(datetime.date, lambda d: d.strftime('%Y-%m-%d'))
serializer.register(datetime.datetime, lambda dt: dt.strftime(serializer._datetime_format))
serializer.register(set, lambda s: sorted(list(s)))
serializer.register(decimal.Decimal, lambda d: int(d) if d == d.to_integral_value() else float(d))
serializer.register(uuid.UUID, str)
