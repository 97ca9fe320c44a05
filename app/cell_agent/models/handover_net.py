import os

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F


class HandoverNet(nn.Module):
    """
    GRU sequence model over signal snapshots.

    Outputs three values per sequence:
        handover probability in [0, 1],
        time to handover as a fraction of the prediction horizon in [0, 1],
        best neighbor index in [0, num_neighbors - 1].
    """

    def __init__(self, input_dim, num_neighbors=6, hidden_dim=128,
                 gru_hidden_dim=64, gru_num_layers=1, activation='relu'):
        """
        Initialize the handover network.

        Args:
            input_dim (int): Features per timestep (3 + num_neighbors + 1).
            num_neighbors (int): Neighbor slots in the input layout.
            hidden_dim (int): Hidden layer dimension for the MLP head.
            gru_hidden_dim (int): Hidden dimension for the GRU layer.
            gru_num_layers (int): Number of stacked GRU layers.
            activation (str): Activation function type.
        """
        super(HandoverNet, self).__init__()

        self.input_dim = input_dim
        self.num_neighbors = num_neighbors
        self.hidden_dim = hidden_dim
        self.gru_hidden_dim = gru_hidden_dim
        self.gru_num_layers = gru_num_layers

        self.gru = nn.GRU(
            input_size=input_dim,
            hidden_size=gru_hidden_dim,
            num_layers=gru_num_layers,
            batch_first=True  # (batch, seq, features)
        )

        self.fc1 = nn.Linear(gru_hidden_dim, hidden_dim)
        self.ln1 = nn.LayerNorm(hidden_dim)
        self.fc2 = nn.Linear(hidden_dim, hidden_dim // 2)
        self.ln2 = nn.LayerNorm(hidden_dim // 2)

        self.head = nn.Linear(hidden_dim // 2, 3)

        if activation == 'tanh':
            self.activation_fn = torch.tanh
        elif activation == 'elu':
            self.activation_fn = F.elu
        else:
            self.activation_fn = F.relu

        self.init_weights()

    def init_weights(self):
        for layer in [self.fc1, self.fc2]:
            nn.init.orthogonal_(layer.weight, gain=np.sqrt(2))
            nn.init.zeros_(layer.bias)

        nn.init.orthogonal_(self.head.weight, gain=0.01)
        nn.init.zeros_(self.head.bias)

    def forward(self, sequence, hidden_state=None):
        """
        Args:
            sequence (torch.Tensor): (batch_size, sequence_length, input_dim).
            hidden_state (torch.Tensor, optional): Initial GRU hidden state.

        Returns:
            torch.Tensor: (batch_size, 3) as [probability, time_fraction, neighbor_index]
        """
        gru_out, _ = self.gru(sequence, hidden_state)

        # Decide from the last timestep only
        x = gru_out[:, -1, :]

        x = self.activation_fn(self.ln1(self.fc1(x)))
        x = self.activation_fn(self.ln2(self.fc2(x)))
        raw = self.head(x)

        probability = torch.sigmoid(raw[:, 0:1])
        time_fraction = torch.sigmoid(raw[:, 1:2])
        neighbor_index = torch.sigmoid(raw[:, 2:3]) * max(self.num_neighbors - 1, 0)

        return torch.cat([probability, time_fraction, neighbor_index], dim=1)


def save_handover_model(model: HandoverNet, filepath, sequence_length):
    """Write a checkpoint that HandoverPredictor.load_model understands"""
    parent_dir = os.path.dirname(filepath)
    if parent_dir and not os.path.exists(parent_dir):
        os.makedirs(parent_dir, exist_ok=True)

    checkpoint = {
        'model_state_dict': model.state_dict(),
        'input_dim': model.input_dim,
        'num_neighbors': model.num_neighbors,
        'hidden_dim': model.hidden_dim,
        'gru_hidden_dim': model.gru_hidden_dim,
        'gru_num_layers': model.gru_num_layers,
        'sequence_length': sequence_length,
    }
    torch.save(checkpoint, filepath)


def load_handover_model(filepath, device='cpu'):
    """Rebuild a HandoverNet from a checkpoint; returns (model, sequence_length)"""
    checkpoint = torch.load(filepath, map_location=device, weights_only=True)

    model = HandoverNet(
        input_dim=int(checkpoint['input_dim']),
        num_neighbors=int(checkpoint['num_neighbors']),
        hidden_dim=int(checkpoint['hidden_dim']),
        gru_hidden_dim=int(checkpoint['gru_hidden_dim']),
        gru_num_layers=int(checkpoint['gru_num_layers']),
    )
    model.load_state_dict(checkpoint['model_state_dict'])
    model.eval()

    return model, int(checkpoint['sequence_length'])
