from .handover_net import HandoverNet, save_handover_model, load_handover_model

__all__ = ['HandoverNet', 'save_handover_model', 'load_handover_model']
