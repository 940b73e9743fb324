from django.dispatch import Signal

# Sent once an item is queryable in a channel timeline.
# Receivers get ``channel`` and ``item`` keyword arguments.
item_added = Signal()
