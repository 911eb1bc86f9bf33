"""Language-model integration: model service adapters and the intent decoder."""
