from django.dispatch import Signal

# Sent once the move of a node has been committed.
# Provides: instance, target, position
node_moved = Signal()
